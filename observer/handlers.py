import kopf
import kubernetes
import logging
import threading
from typing import Any, Dict, List, Optional

from . import claims, config, errors
from . import conditions as c
from .health.server import bind_registry, mark_not_ready, mark_ready, start_health_server
from .registry import ControllerRegistry
from .routes.client import ClusterClient
from .routes.manager import manage_route, owner_label, secondary_route_builder

logger = logging.getLogger(__name__)

SECONDARY_FIELD = "secondaryRoute"
PRIMARY_FIELD = "primaryRoute"

# Sub-controllers of every Observer handled by this process
registry = ControllerRegistry()

# kopf runs timers concurrently with change handlers of the same object
_observer_locks: Dict[tuple, threading.Lock] = {}
_observer_locks_guard = threading.Lock()


def observer_lock(namespace: str, name: str) -> threading.Lock:
    """Lock serializing parent reconciles of one Observer."""
    with _observer_locks_guard:
        return _observer_locks.setdefault((namespace, name), threading.Lock())


def load_kube_config():
    try:
        kubernetes.config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except kubernetes.config.ConfigException:
        # Fallback to kubeconfig for local development
        kubernetes.config.load_kube_config()
        logger.info("Loaded local Kubernetes config")


@kopf.on.startup()
def startup_fn(settings: kopf.OperatorSettings, logger, **kwargs):
    """Load the cluster configuration and start the health server."""
    load_kube_config()

    settings.posting.level = logging.WARNING
    settings.watching.server_timeout = config.WATCH_TIMEOUT_SECONDS

    bind_registry(registry)
    if config.HEALTH_PORT:
        health_thread = threading.Thread(
            target=start_health_server, args=(config.HEALTH_PORT,), name="health-server", daemon=True)
        health_thread.start()
        logger.info("Started health server in background thread")

    mark_ready()
    logger.info(f"Observer operator started (target namespace default: {config.TARGET_NAMESPACE or '-'}, "
                f"bridge namespace default: {config.BRIDGE_NAMESPACE or '-'})")


@kopf.on.cleanup()
def cleanup_fn(logger, **kwargs):
    """Stop every sub-controller on shutdown."""
    mark_not_ready()
    registry.stop_all()
    logger.info("Observer operator shutdown complete")


def _top_level_conditions(claimed: bool, reference: Optional[Dict[str, Any]],
                          degraded: List[tuple]) -> List[Dict[str, str]]:
    if not claimed:
        return [
            c.condition(c.BACKUP, c.TRUE, "AnotherInstanceManaging",
                        "Another Observer manages the target namespace"),
            c.condition(c.DEGRADED, c.FALSE, "AsExpected"),
            c.condition(c.READY, c.FALSE, "Backup", "Standing by as a backup instance"),
            c.condition(c.PROGRESSING, c.FALSE, "Backup"),
        ]

    templates = [c.condition(c.BACKUP, c.FALSE, "ClaimHeld", "This Observer manages the target namespace")]
    if degraded:
        reason, message = degraded[0]
        templates.append(c.condition(c.DEGRADED, c.TRUE, reason, message))
    else:
        templates.append(c.condition(c.DEGRADED, c.FALSE, "AsExpected"))

    if reference is None:
        templates.append(c.condition(c.READY, c.FALSE, "WorkloadNotFound", "No workload found in the target namespace"))
        templates.append(c.condition(c.PROGRESSING, c.TRUE, "WaitingForWorkload",
                                     "Waiting for the workload to appear"))
    elif degraded:
        templates.append(c.condition(c.READY, c.FALSE, "Degraded", degraded[0][1]))
        templates.append(c.condition(c.PROGRESSING, c.FALSE, "Reconciled"))
    else:
        templates.append(c.condition(c.READY, c.TRUE, "Ready", f"Managing {reference['kind']} {reference['name']}"))
        templates.append(c.condition(c.PROGRESSING, c.FALSE, "Reconciled"))
    return templates


def _write_status(client: ClusterClient, observer: Dict[str, Any], new_status: Dict[str, Any]) -> Dict[str, Any]:
    """Patch the fields of new_status that differ; returns the latest observer."""
    current = observer.get("status") or {}
    changes = {key: value for key, value in new_status.items() if current.get(key) != value}
    if not changes:
        return observer
    meta = observer["metadata"]
    logger.info(f"Updating status of {meta['namespace']}/{meta['name']}: {sorted(changes)}")
    return client.patch_observer_status(meta["namespace"], meta["name"], meta.get("resourceVersion"), changes)


def reconcile_observer(namespace: str, name: str, client: ClusterClient = None,
                       controllers: ControllerRegistry = None, now: str = None) -> Optional[Dict[str, Any]]:
    """
    Run one pass of the parent reconciler for an Observer.

    Args:
        namespace: Namespace of the Observer
        name: Name of the Observer
        client: Cluster client (defaults to one built from the loaded config)
        controllers: Sub-controller registry (defaults to the process registry)
        now: Timestamp for condition transitions

    Returns:
        dict: The status written (or kept), None when the Observer is gone

    Raises:
        Exception: Any error that should requeue the Observer
    """
    if client is None:
        client = ClusterClient()
    if controllers is None:
        controllers = registry

    observer = client.get_observer(namespace, name)
    if observer is None or observer["metadata"].get("deletionTimestamp"):
        released = controllers.release(namespace, name)
        logger.info(f"Observer {namespace}/{name} is gone, released controllers for {released}")
        return None

    generation = observer["metadata"].get("generation", 0)
    status = observer.get("status") or {}
    target = claims.target_namespace(observer)
    bridge = claims.bridge_namespace(observer)

    # target namespace changed: drop controllers for previous namespaces
    controllers.release(namespace, name, keep=target)

    if not target:
        templates = [
            c.condition(c.BACKUP, c.FALSE, "NoTarget"),
            c.condition(c.DEGRADED, c.TRUE, "MissingTargetNamespace", "spec.targetNamespace is not set"),
            c.condition(c.READY, c.FALSE, "MissingTargetNamespace", "spec.targetNamespace is not set"),
            c.condition(c.PROGRESSING, c.FALSE, "MissingTargetNamespace"),
        ]
        new_status = {"conditions": c.merge(status.get("conditions"), templates, generation, now),
                      "managedReference": None}
        _write_status(client, observer, new_status)
        return new_status

    claimed = claims.holds_claim(observer, client.list_observers())
    if not claimed:
        logger.info(f"Observer {namespace}/{name} is a backup for namespace {target}")
        controllers.release(namespace, name)
        new_status = {
            "conditions": c.merge(status.get("conditions"), _top_level_conditions(False, None, []), generation, now),
            "managedReference": None,
            PRIMARY_FIELD: {"conditions": []},
            SECONDARY_FIELD: {"conditions": []},
        }
        _write_status(client, observer, new_status)
        return new_status

    reference = claims.detect_workload(client, target)
    degraded = []
    deferred_error = None

    controller_ready = False
    try:
        controllers.ensure(target, namespace, name)
        controller_ready = True
    except errors.SubControllerError as e:
        logger.error(f"Cannot manage namespace {target} for {namespace}/{name}: {str(e)}")
        degraded.append(("ControllerFailed", str(e)))
        deferred_error = e

    if bridge:
        result = manage_route(client, observer, SECONDARY_FIELD, bridge, config.SECONDARY_ROUTE_NAME,
                              secondary_route_builder(client, bridge, owner_label(namespace, name)), now=now)
        secondary_status = result.status
        if result.error is not None:
            degraded.append(("SecondaryRouteDegraded", str(result.error)))
            deferred_error = deferred_error or result.error
        elif c.is_true(secondary_status["conditions"], c.DEGRADED):
            message = c.find(secondary_status["conditions"], c.DEGRADED)["message"]
            degraded.append(("SecondaryRouteDegraded", message))
            deferred_error = deferred_error or errors.RouteError("NotAdmitted", message)
    else:
        secondary_status = {"conditions": []}

    if c.is_true((status.get(PRIMARY_FIELD) or {}).get("conditions"), c.DEGRADED):
        degraded.append(("PrimaryRouteDegraded", "The primary route is degraded"))

    new_status = {
        "conditions": c.merge(status.get("conditions"), _top_level_conditions(True, reference, degraded),
                              generation, now),
        "managedReference": reference,
        SECONDARY_FIELD: secondary_status,
    }
    latest = _write_status(client, observer, new_status)

    if controller_ready:
        controllers.notify(target, latest)

    if deferred_error is not None:
        raise deferred_error
    return new_status


def _reconcile_or_retry(namespace: str, name: str, logger, retry: int) -> None:
    try:
        with observer_lock(namespace, name):
            reconcile_observer(namespace, name)
    except Exception as e:
        kind = errors.classify(e)
        if kind == errors.NOT_FOUND:
            logger.info(f"Observer {namespace}/{name} disappeared during reconcile")
            return
        if kind in (errors.CONFLICT, errors.POLICY, errors.CONSTRUCTION):
            logger.warning(f"Reconcile of {namespace}/{name} will be retried ({kind}): {str(e)}")
        else:
            logger.error(f"Error reconciling {namespace}/{name}: {str(e)}", exc_info=True)
        raise errors.requeue_error(e, retry)


@kopf.on.resume(config.GROUP, config.VERSION, config.PLURAL)
@kopf.on.create(config.GROUP, config.VERSION, config.PLURAL)
@kopf.on.update(config.GROUP, config.VERSION, config.PLURAL)
def observer_fn(name: str, namespace: str, logger, retry: int, **kwargs):
    """
    Handle creation, spec changes and operator restarts for Observers.
    """
    logger.info(f"Reconciling Observer {namespace}/{name}")
    _reconcile_or_retry(namespace, name, logger, retry)


@kopf.timer(config.GROUP, config.VERSION, config.PLURAL,
            interval=config.RECONCILE_INTERVAL, initial_delay=config.RECONCILE_INTERVAL)
def resync_fn(name: str, namespace: str, logger, retry: int, **kwargs):
    """
    Periodic resync: picks up workload changes, claim hand-overs and status drift.
    """
    _reconcile_or_retry(namespace, name, logger, retry)


@kopf.on.delete(config.GROUP, config.VERSION, config.PLURAL)
def delete_fn(name: str, namespace: str, logger, **kwargs):
    """
    Stop the sub-controllers of a deleted Observer.
    """
    with observer_lock(namespace, name):
        released = registry.release(namespace, name)
    logger.info(f"Observer {namespace}/{name} deleted, stopped controllers for namespaces {released}")
