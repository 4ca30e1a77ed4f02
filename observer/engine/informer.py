"""
List+watch informers running on background threads.

An informer lists a resource kind in one namespace, then streams watch events,
re-listing every ``resync_period`` seconds. Each event is offered to the
registered watch bindings; a binding only ever enqueues work, it never runs
reconcile logic on the informer thread.
"""

import functools
import logging
import threading
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException

from ..errors import ControllerStopped
from ..routes.client import to_dict

logger = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
SYNC = "SYNC"

MAX_BACKOFF = 30.0

Predicate = Callable[[Dict[str, Any]], bool]
Handler = Callable[[str, Dict[str, Any]], None]


class WatchBinding(NamedTuple):
    kind: str
    handler: Handler
    predicate: Optional[Predicate] = None


def label_predicate(match_labels: Dict[str, str]) -> Predicate:
    def matches(obj: Dict[str, Any]) -> bool:
        labels = (obj.get("metadata") or {}).get("labels") or {}
        return all(labels.get(k) == v for k, v in match_labels.items())
    return matches


def name_predicate(name: str) -> Predicate:
    def matches(obj: Dict[str, Any]) -> bool:
        return (obj.get("metadata") or {}).get("name") == name
    return matches


def _name(obj: Dict[str, Any]) -> Optional[str]:
    return (obj.get("metadata") or {}).get("name")


class Informer:
    """Maintain a local store of one resource kind and fan events out to bindings."""

    def __init__(self, kind: str, list_fn: Callable, resync_period: float,
                 watch_timeout: int = 60, **list_kwargs):
        self.kind = kind
        self.list_fn = list_fn
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self.list_kwargs = list_kwargs

        self._bindings: List[WatchBinding] = []
        self._store: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._resource_version: Optional[str] = None
        self._synced = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._active_watch: Optional[watch.Watch] = None
        self._active_response = None

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    @property
    def started(self) -> bool:
        return self._thread is not None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def add_binding(self, binding: WatchBinding) -> None:
        with self._lock:
            self._bindings.append(binding)

    def get(self, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._store.get(name)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=f"informer-{self.kind}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the informer; an open watch connection is closed right away."""
        self._stop_event.set()
        with self._lock:
            active = self._active_watch
            response = self._active_response
        if active is not None:
            active.stop()
        if response is not None:
            # unblocks the read the watch stream is waiting in
            response.close()

    def join(self, timeout: float = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _dispatch(self, event_type: str, obj: Dict[str, Any]) -> None:
        with self._lock:
            bindings = list(self._bindings)
        for binding in bindings:
            try:
                if binding.predicate is None or binding.predicate(obj):
                    binding.handler(event_type, obj)
            except Exception as e:
                logger.error(f"Watch handler for {self.kind} failed on {event_type} {_name(obj)}: {str(e)}",
                             exc_info=True)

    def relist(self) -> None:
        """List every object, emit the differences against the store, and replace it."""
        result = self.list_fn(**self.list_kwargs)
        if isinstance(result, dict):
            items = result.get("items", [])
            resource_version = (result.get("metadata") or {}).get("resourceVersion")
        else:
            items = [to_dict(item) for item in result.items]
            resource_version = result.metadata.resource_version

        fresh = {}
        for item in items:
            name = _name(item)
            if name:
                fresh[name] = item

        with self._lock:
            previous = self._store
            self._store = fresh
            self._resource_version = resource_version

        for name, obj in fresh.items():
            self._dispatch(SYNC if name in previous else ADDED, obj)
        for name, obj in previous.items():
            if name not in fresh:
                self._dispatch(DELETED, obj)
        self._synced.set()

    def handle_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        obj = event.get("raw_object")
        if obj is None:
            obj = to_dict(event.get("object"))

        if event_type == "ERROR":
            code = obj.get("code") if isinstance(obj, dict) else None
            raise ApiException(status=code or 500, reason=(obj or {}).get("message", "watch error"))

        resource_version = (obj.get("metadata") or {}).get("resourceVersion")
        if event_type == "BOOKMARK":
            with self._lock:
                self._resource_version = resource_version
            return

        name = _name(obj)
        if not name:
            return
        with self._lock:
            if event_type == DELETED:
                self._store.pop(name, None)
            else:
                self._store[name] = obj
            if resource_version:
                self._resource_version = resource_version
        self._dispatch(event_type, obj)

    def _open_watch(self, *args, **kwargs):
        if self._stop_event.is_set():
            raise ControllerStopped(f"Informer for {self.kind} has been stopped")
        response = self.list_fn(*args, **kwargs)
        with self._lock:
            self._active_response = response
        if self._stop_event.is_set():
            response.close()
        return response

    def _watch_until(self, deadline: float) -> None:
        timeout = int(max(1, min(self.watch_timeout, deadline - time.monotonic())))
        w = watch.Watch()
        with self._lock:
            if self._stop_event.is_set():
                return
            self._active_watch = w
            resource_version = self._resource_version

        # keeps the list function's docstring so the watch can deserialize events
        @functools.wraps(self.list_fn)
        def open_watch(*args, **kwargs):
            return self._open_watch(*args, **kwargs)

        try:
            for event in w.stream(open_watch, resource_version=resource_version,
                                  timeout_seconds=timeout, **self.list_kwargs):
                if self._stop_event.is_set():
                    break
                self.handle_event(event)
        finally:
            w.stop()
            with self._lock:
                self._active_watch = None
                self._active_response = None

    def _run(self) -> None:
        backoff = 1.0
        next_resync = 0.0
        while not self._stop_event.is_set():
            try:
                if time.monotonic() >= next_resync:
                    if self._stop_event.is_set():
                        break
                    self.relist()
                    next_resync = time.monotonic() + self.resync_period
                self._watch_until(next_resync)
                backoff = 1.0
            except ApiException as e:
                if self._stop_event.is_set():
                    break
                if e.status == 410:
                    # resourceVersion too old, list again
                    logger.info(f"Watch on {self.kind} expired, relisting")
                    next_resync = 0.0
                    continue
                logger.warning(f"Watch error for {self.kind}: {str(e)}")
                next_resync = 0.0
                self._stop_event.wait(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF)
            except Exception as e:
                if self._stop_event.is_set():
                    break
                logger.warning(f"Unexpected informer error for {self.kind}: {str(e)}", exc_info=True)
                next_resync = 0.0
                self._stop_event.wait(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF)
        logger.debug(f"Informer for {self.kind} stopped")


class InformerFactorySet:
    """
    Informers of one scope (namespace).

    Informers are created unstarted; ``start`` launches every informer that is
    not running yet and may be called again after new informers were added.
    ``stop`` stops them all for good.
    """

    def __init__(self, namespace: str, watch_timeout: int = 60):
        self.namespace = namespace
        self.watch_timeout = watch_timeout
        self._informers: Dict[str, Informer] = {}
        self._lock = threading.Lock()
        self._stopped = False

    def informer(self, kind: str, list_fn: Callable, resync_period: float, **list_kwargs) -> Informer:
        """Return the shared informer for ``kind``, creating it on first use."""
        with self._lock:
            existing = self._informers.get(kind)
            if existing is not None:
                return existing
            created = Informer(kind, list_fn, resync_period, self.watch_timeout,
                               namespace=self.namespace, **list_kwargs)
            self._informers[kind] = created
            return created

    def start(self) -> None:
        with self._lock:
            if self._stopped:
                return
            pending = [i for i in self._informers.values() if not i.started]
        for informer in pending:
            informer.start()

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            informers = list(self._informers.values())
        for informer in informers:
            informer.stop()

    def join(self, timeout: float = None) -> None:
        with self._lock:
            informers = list(self._informers.values())
        for informer in informers:
            informer.join(timeout)

    def has_synced(self) -> bool:
        with self._lock:
            return all(i.has_synced for i in self._informers.values())

    def kinds(self) -> List[str]:
        with self._lock:
            return sorted(self._informers)
