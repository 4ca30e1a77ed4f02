"""
Namespace-scoped sub-controller.

One sub-controller is spawned by the parent reconciler for every target
namespace claimed by an Observer. It watches the managed workload, the
workload service, the CA bundle secret and the routes of that namespace, and
converges the primary route. The parent wakes it up through a mailbox whenever
the Observer itself changes.
"""

import logging
import threading
from typing import Any, Dict, Hashable, Optional

import kubernetes

from . import conditions, config
from .engine.channel import Mailbox
from .engine.controller import ReconciliationEngine
from .engine.informer import InformerFactorySet, label_predicate, name_predicate
from .errors import ControllerStopped, SubControllerError
from .routes.client import ClusterClient
from .routes import policy
from .routes.manager import manage_route, owner_label, primary_route_builder

PRIMARY_FIELD = "primaryRoute"


class SubController:
    def __init__(self, observer_namespace: str, observer_name: str, target_namespace: str,
                 custom_api=None, core_api=None, workers: int = None):
        self.observer_namespace = observer_namespace
        self.observer_name = observer_name
        self.target_namespace = target_namespace
        self.owner = f"{observer_namespace}/{observer_name}"
        self.name = "-".join(["ManagedObserver", observer_namespace, observer_name])
        self.logger = logging.getLogger(__name__).getChild(self.name)

        self.custom_api = custom_api or kubernetes.client.CustomObjectsApi()
        self.core_api = core_api or kubernetes.client.CoreV1Api()
        self.client = ClusterClient(self.custom_api, self.core_api, guard=self._ensure_running)

        self._stopped = threading.Event()
        self.last_observed: Optional[Dict[str, Any]] = None
        self.mailbox = Mailbox(self.name)
        self.engine = ReconciliationEngine(
            self.name,
            self.reconcile,
            workers=workers or config.WORKER_COUNT,
            base_delay=config.BACKOFF_BASE_SECONDS,
            max_delay=config.BACKOFF_MAX_SECONDS,
            logger=self.logger,
        )
        self.factories = InformerFactorySet(target_namespace, watch_timeout=config.WATCH_TIMEOUT_SECONDS)

        try:
            self._register_watches()
        except Exception as e:
            self.stop()
            raise SubControllerError(
                f"Failed to set up watches for namespace {target_namespace}: {str(e)}") from e

    @property
    def key(self) -> Hashable:
        return (self.observer_namespace, self.observer_name)

    def _register_watches(self) -> None:
        self.logger.info(f"Setting up watches for managed namespace {self.target_namespace}")
        enqueue = self.engine.enqueue(self.key)

        self.engine.register_channel(self.mailbox, self._on_notification)

        workloads = self.factories.informer(
            "workloads",
            self.custom_api.list_namespaced_custom_object,
            config.WORKLOAD_RESYNC_SECONDS,
            group=config.WORKLOAD_GROUP,
            version=config.WORKLOAD_VERSION,
            plural=config.WORKLOAD_PLURAL,
        )
        self.engine.register_watch(workloads, enqueue)

        services = self.factories.informer(
            "services",
            self.core_api.list_namespaced_service,
            config.CORE_RESYNC_SECONDS,
        )
        self.engine.register_watch(
            services, enqueue, label_predicate(config.parse_selector(config.WORKLOAD_SERVICE_SELECTOR)))

        secrets = self.factories.informer(
            "secrets",
            self.core_api.list_namespaced_secret,
            config.CORE_RESYNC_SECONDS,
        )
        self.engine.register_watch(secrets, enqueue, name_predicate(config.CA_BUNDLE_SECRET_NAME))

        routes = self.factories.informer(
            "routes",
            self.custom_api.list_namespaced_custom_object,
            config.ROUTE_RESYNC_SECONDS,
            group=config.ROUTE_GROUP,
            version=config.ROUTE_VERSION,
            plural=config.ROUTE_PLURAL,
        )
        self.engine.register_watch(routes, enqueue)

        # started by the engine once its workers run
        self.engine.add_factories(self.factories)

    def _ensure_running(self) -> None:
        if self._stopped.is_set():
            raise ControllerStopped(f"Controller {self.name} has been stopped")

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> None:
        self._ensure_running()
        self.engine.start()

    def stop(self) -> None:
        """Stop watching and reconciling. Safe to call more than once."""
        if self._stopped.is_set():
            return
        self._stopped.set()
        self.mailbox.close()
        self.engine.stop()

    def join(self, timeout: float = None) -> None:
        self.engine.join(timeout)

    def notify(self, observer: Dict[str, Any]) -> bool:
        """Hand the latest Observer to the controller without blocking."""
        return self.mailbox.offer(observer)

    def _on_notification(self, observer: Dict[str, Any]) -> None:
        self.last_observed = observer
        self.engine.queue.add(self.key)

    def reconcile(self, key: Hashable) -> None:
        """Converge the primary route of the target namespace."""
        self.logger.info(f"Reconciling {self.owner} in namespace {self.target_namespace}")

        observer = self.client.get_observer(self.observer_namespace, self.observer_name)
        if observer is None:
            self.logger.info(f"Observer {self.owner} not found, nothing to do")
            return
        self.last_observed = observer

        status = observer.get("status") or {}
        reference = status.get("managedReference") or {}
        previous = (status.get(PRIMARY_FIELD) or {}).get("conditions") or []
        state = policy.management_state((observer.get("spec") or {}).get(PRIMARY_FIELD))

        error = None
        if reference.get("namespace") == self.target_namespace or state != policy.MANAGED:
            result = manage_route(
                self.client,
                observer,
                PRIMARY_FIELD,
                self.target_namespace,
                config.PRIMARY_ROUTE_NAME,
                primary_route_builder(self.client, self.target_namespace,
                                      owner_label(self.observer_namespace, self.observer_name)),
            )
            route_status, error = result.status, result.error
        else:
            # nothing to expose until the workload is recorded
            self.logger.info(f"Observer {self.owner} does not manage a workload in {self.target_namespace} yet")
            route_status = {"conditions": conditions.merge(
                previous,
                [conditions.condition(conditions.EXPOSED, conditions.FALSE, "WorkloadNotFound",
                                      f"No workload found in namespace {self.target_namespace}")],
                observer["metadata"].get("generation", 0),
            )}

        if route_status["conditions"] != previous:
            self.client.patch_observer_status(
                self.observer_namespace,
                self.observer_name,
                observer["metadata"].get("resourceVersion"),
                {PRIMARY_FIELD: route_status},
            )
            self.logger.info(f"Updated {PRIMARY_FIELD} status of {self.owner}")

        if error is not None:
            raise error

    def describe(self) -> Dict[str, Any]:
        observed = self.last_observed or {}
        return {
            "name": self.name,
            "owner": self.owner,
            "namespace": self.target_namespace,
            "started": self.engine.started,
            "stopped": self.stopped,
            "synced": self.factories.has_synced(),
            "watches": self.factories.kinds(),
            "observedGeneration": (observed.get("metadata") or {}).get("generation"),
        }
