"""
Process-wide registry of running sub-controllers, keyed by target namespace.

The registry is created when the operator module is imported, filled and
drained by the parent handlers, and emptied by the kopf cleanup handler. Every
operation runs under one lock, so a ``stop`` never overlaps a ``notify`` that
is already in flight and two parents can never race on the same namespace.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .errors import SubControllerError
from .subcontroller import SubController

logger = logging.getLogger(__name__)

JOIN_TIMEOUT = 5.0


class ControllerRegistry:
    """
    Sub-controllers keyed by target namespace.

    ``factory(owner_namespace, owner_name, namespace)`` builds a handle exposing
    ``owner``, ``stopped``, ``start``, ``stop``, ``join``, ``notify`` and
    ``describe``; tests pass an in-memory fake.
    """

    def __init__(self, factory: Callable[..., Any] = None, join_timeout: float = JOIN_TIMEOUT):
        self._factory = factory or SubController
        self._join_timeout = join_timeout
        self._controllers: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def ensure(self, namespace: str, owner_namespace: str, owner_name: str):
        """
        Return the running sub-controller for ``namespace``, creating it if needed.

        A controller that belongs to another Observer, or that was stopped, is
        replaced.

        Args:
            namespace: Target namespace the sub-controller is scoped to
            owner_namespace: Namespace of the owning Observer
            owner_name: Name of the owning Observer

        Returns:
            The sub-controller handle

        Raises:
            SubControllerError: If the controller cannot be built or started
        """
        owner = f"{owner_namespace}/{owner_name}"
        replaced = None
        with self._lock:
            existing = self._controllers.get(namespace)
            if existing is not None and existing.owner == owner and not existing.stopped:
                return existing
            if existing is not None:
                logger.info(f"Replacing controller for namespace {namespace} owned by {existing.owner}")
                existing.stop()
                del self._controllers[namespace]
                replaced = existing

            try:
                handle = self._factory(owner_namespace, owner_name, namespace)
            except SubControllerError:
                raise
            except Exception as e:
                raise SubControllerError(f"Failed to create controller for namespace {namespace}: {str(e)}") from e

            try:
                handle.start()
            except Exception as e:
                handle.stop()
                raise SubControllerError(f"Failed to start controller for namespace {namespace}: {str(e)}") from e

            self._controllers[namespace] = handle
            logger.info(f"Started controller for namespace {namespace} owned by {owner}")

        if replaced is not None:
            replaced.join(self._join_timeout)
        return handle

    def get(self, namespace: str):
        with self._lock:
            return self._controllers.get(namespace)

    def stop(self, namespace: str) -> bool:
        """Stop and forget the controller of ``namespace``. Returns False if none was running."""
        with self._lock:
            handle = self._controllers.pop(namespace, None)
            if handle is None:
                return False
            handle.stop()
        logger.info(f"Stopped controller for namespace {namespace}")
        handle.join(self._join_timeout)
        return True

    def notify(self, namespace: str, resource: Dict[str, Any]) -> bool:
        """Deliver the latest Observer to the controller of ``namespace`` without blocking."""
        with self._lock:
            handle = self._controllers.get(namespace)
            if handle is None:
                logger.warning(f"No controller running for namespace {namespace}, dropping notification")
                return False
            return handle.notify(resource)

    def release(self, owner_namespace: str, owner_name: str, keep: Optional[str] = None) -> List[str]:
        """Stop every controller owned by the Observer, except the one for ``keep``."""
        owner = f"{owner_namespace}/{owner_name}"
        with self._lock:
            namespaces = [ns for ns, handle in self._controllers.items()
                          if handle.owner == owner and ns != keep]
            handles = [self._controllers.pop(ns) for ns in namespaces]
            for handle in handles:
                handle.stop()
        for namespace, handle in zip(namespaces, handles):
            logger.info(f"Released controller for namespace {namespace} owned by {owner}")
            handle.join(self._join_timeout)
        return namespaces

    def stop_all(self) -> None:
        with self._lock:
            handles = list(self._controllers.values())
            self._controllers.clear()
            for handle in handles:
                handle.stop()
        for handle in handles:
            handle.join(self._join_timeout)
        logger.info(f"Stopped {len(handles)} controller(s)")

    def describe(self) -> List[Dict[str, Any]]:
        with self._lock:
            handles = list(self._controllers.values())
        return [handle.describe() for handle in handles]

    def namespaces(self) -> List[str]:
        with self._lock:
            return sorted(self._controllers)

    def __contains__(self, namespace: str) -> bool:
        with self._lock:
            return namespace in self._controllers

    def __len__(self) -> int:
        with self._lock:
            return len(self._controllers)
