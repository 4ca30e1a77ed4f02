"""
Reconciliation engine: a work queue, a pool of worker threads, and the watch
sources feeding the queue.

Watches are registered before ``start``. Informer factories handed to the
engine are started only once the queue and the workers are running, so the
initial listing of every informer lands in a live queue.
"""

import logging
import threading
from typing import Any, Callable, Hashable, List, Optional

from .. import errors
from .channel import Mailbox
from .informer import Informer, InformerFactorySet, WatchBinding
from .queue import WorkQueue


class ReconciliationEngine:
    """
    Work queue plus worker threads for one controller.

    Informer events and mailbox notifications only enqueue keys; workers pop
    keys and call ``reconcile_fn``. Failures are re-added according to their
    error kind: not-found keys are dropped, conflicts are retried right away
    and everything else backs off exponentially.
    """

    def __init__(self, name: str, reconcile_fn: Callable[[Hashable], None], workers: int = 1,
                 base_delay: float = 1.0, max_delay: float = 300.0, logger: logging.Logger = None):
        self.name = name
        self.reconcile_fn = reconcile_fn
        self.workers = max(1, workers)
        self.queue = WorkQueue(name, base_delay=base_delay, max_delay=max_delay)
        self.logger = logger or logging.getLogger(__name__)

        self._factories: List[InformerFactorySet] = []
        self._channels: List[tuple] = []
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._started = False
        self._stopped = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def stopped(self) -> bool:
        return self._stopped

    def enqueue(self, key: Hashable) -> Callable[[str, Any], None]:
        """Watch handler that maps every event onto a fixed key."""
        def handler(event_type: str, obj: Any) -> None:
            self.queue.add(key)
        return handler

    def register_watch(self, informer: Informer, handler: Callable[[str, Any], None],
                       predicate: Optional[Callable[[Any], bool]] = None) -> WatchBinding:
        with self._lock:
            if self._stopped:
                raise errors.SubControllerError(f"Controller {self.name} is stopped")
        binding = WatchBinding(informer.kind, handler, predicate)
        informer.add_binding(binding)
        return binding

    def register_channel(self, mailbox: Mailbox, handler: Callable[[Any], None]) -> None:
        """Consume a mailbox on a dedicated thread once the engine starts."""
        with self._lock:
            self._channels.append((mailbox, handler))
            if self._started and not self._stopped:
                self._spawn(self._consume, f"{self.name}-channel", mailbox, handler)

    def add_factories(self, factories: InformerFactorySet) -> None:
        with self._lock:
            self._factories.append(factories)
            start_now = self._started and not self._stopped
        if start_now:
            factories.start()

    def _spawn(self, target, name: str, *args) -> None:
        thread = threading.Thread(target=target, name=name, args=args, daemon=True)
        self._threads.append(thread)
        thread.start()

    def start(self) -> None:
        with self._lock:
            if self._started or self._stopped:
                return
            for i in range(self.workers):
                self._spawn(self._work, f"{self.name}-worker-{i}")
            for mailbox, handler in self._channels:
                self._spawn(self._consume, f"{self.name}-channel", mailbox, handler)
            self._started = True
            factories = list(self._factories)
        for factory_set in factories:
            factory_set.start()
        self.logger.info(f"Controller {self.name} started with {self.workers} worker(s)")

    def stop(self) -> None:
        """Signal every worker, channel and informer to stop; does not wait."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            factories = list(self._factories)
            channels = list(self._channels)
        self.queue.shut_down()
        for mailbox, _ in channels:
            mailbox.close()
        for factory_set in factories:
            factory_set.stop()
        self.logger.info(f"Controller {self.name} stopped")

    def join(self, timeout: float = None) -> None:
        """Wait for the threads of a stopped engine to exit."""
        with self._lock:
            factories = list(self._factories)
            threads = list(self._threads)
        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join(timeout)
        for factory_set in factories:
            factory_set.join(timeout)

    def _consume(self, mailbox: Mailbox, handler: Callable[[Any], None]) -> None:
        while True:
            item = mailbox.take()
            if item is None:
                if mailbox.closed:
                    return
                continue
            try:
                handler(item)
            except Exception as e:
                self.logger.error(f"Notification handler of {self.name} failed: {str(e)}", exc_info=True)

    def _work(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def process(self, key: Hashable) -> None:
        """Run one reconcile for ``key`` and requeue it according to the error kind."""
        try:
            self.reconcile_fn(key)
        except errors.ControllerStopped:
            return
        except Exception as e:
            kind = errors.classify(e)
            if kind == errors.NOT_FOUND:
                self.logger.info(f"Object for {key} no longer exists")
                self.queue.forget(key)
            elif kind == errors.CONFLICT:
                self.logger.info(f"Conflict while reconciling {key}, requeueing")
                self.queue.add(key)
            else:
                delay = self.queue.add_rate_limited(key)
                self.logger.warning(f"Reconcile of {key} failed ({kind}), retrying in {delay:.0f}s: {str(e)}")
            return
        self.queue.forget(key)
