import copy
import logging
from typing import Any, Callable, Dict, NamedTuple, Optional

from kubernetes.client.rest import ApiException

from .. import conditions, config
from ..errors import RouteError, is_conflict
from . import policy
from .client import ClusterClient

logger = logging.getLogger(__name__)


class RouteResult(NamedTuple):
    status: Dict[str, Any]
    action: str
    error: Optional[Exception]


def owner_label(namespace: str, name: str) -> str:
    return f"{namespace}.{name}"


def build_route(name: str, namespace: str, hostname: Optional[str], service_name: str, target_port: str,
                termination: str, owner: str, ca_certificate: Optional[str] = None) -> Dict[str, Any]:
    """
    Render the desired route manifest.

    Args:
        name: Route name
        namespace: Route namespace
        hostname: Requested host; omitted so the platform assigns one when empty
        service_name: Service the route fronts
        target_port: Named service port
        termination: TLS termination (reencrypt or passthrough)
        owner: Value of the owner label (``<namespace>.<name>`` of the Observer)
        ca_certificate: PEM bundle to trust when re-encrypting

    Returns:
        dict: Route manifest
    """
    tls = {
        "termination": termination,
        "insecureEdgeTerminationPolicy": "Redirect",
    }
    if ca_certificate:
        tls["destinationCACertificate"] = ca_certificate

    spec = {
        "to": {"kind": "Service", "name": service_name, "weight": 100},
        "port": {"targetPort": target_port},
        "tls": tls,
    }
    if hostname:
        spec["host"] = hostname

    return {
        "apiVersion": f"{config.ROUTE_GROUP}/{config.ROUTE_VERSION}",
        "kind": "Route",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {
                config.MANAGED_BY_LABEL: config.MANAGED_BY_VALUE,
                config.OWNER_LABEL: owner,
            },
        },
        "spec": spec,
    }


def primary_route_builder(client: ClusterClient, namespace: str, owner: str) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
    """Desired-route factory for the workload route in the target namespace."""
    def build(route_spec: Dict[str, Any]) -> Dict[str, Any]:
        service = client.find_service(namespace, label_selector=config.WORKLOAD_SERVICE_SELECTOR)
        if service is None:
            raise RouteError(
                "ServiceNotFound",
                f"No service matching {config.WORKLOAD_SERVICE_SELECTOR} in namespace {namespace}")
        ca_bundle = client.get_ca_bundle(namespace, config.CA_BUNDLE_SECRET_NAME, config.CA_BUNDLE_SECRET_KEY)
        if ca_bundle is None:
            logger.warning(f"CA bundle secret {namespace}/{config.CA_BUNDLE_SECRET_NAME} not found, "
                           f"route will not pin the destination CA")
        return build_route(
            config.PRIMARY_ROUTE_NAME,
            namespace,
            route_spec.get("hostname"),
            service["metadata"]["name"],
            config.WORKLOAD_SERVICE_PORT,
            "reencrypt",
            owner,
            ca_certificate=ca_bundle,
        )
    return build


def secondary_route_builder(client: ClusterClient, namespace: str, owner: str) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
    """Desired-route factory for the bridge route in the bridge namespace."""
    def build(route_spec: Dict[str, Any]) -> Dict[str, Any]:
        service = client.find_service(namespace, name=config.BRIDGE_SERVICE_NAME)
        if service is None:
            raise RouteError(
                "ServiceNotFound",
                f"Service {namespace}/{config.BRIDGE_SERVICE_NAME} does not exist")
        return build_route(
            config.SECONDARY_ROUTE_NAME,
            namespace,
            route_spec.get("hostname"),
            config.BRIDGE_SERVICE_NAME,
            config.BRIDGE_SERVICE_PORT,
            "passthrough",
            owner,
        )
    return build


def _updated_route(current: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    body = copy.deepcopy(current)
    body.pop("status", None)
    spec = body.setdefault("spec", {})
    desired_spec = desired["spec"]
    for key in ("to", "port", "tls"):
        spec[key] = desired_spec[key]
    if desired_spec.get("host"):
        spec["host"] = desired_spec["host"]
    labels = body["metadata"].get("labels") or {}
    labels.update(desired["metadata"]["labels"])
    body["metadata"]["labels"] = labels
    return body


def manage_route(client: ClusterClient, observer: Dict[str, Any], field: str, namespace: str, name: str,
                 desired_fn: Callable[[Dict[str, Any]], Dict[str, Any]], now: str = None) -> RouteResult:
    """
    Converge one route to the state declared in ``observer.spec.<field>``.

    The returned status must be written back by the caller; when ``error`` is set
    it must be raised afterwards so the pass is requeued.

    Args:
        client: Cluster client
        observer: The Observer resource as last read
        field: Spec/status field of the route (primaryRoute or secondaryRoute)
        namespace: Namespace of the route
        name: Name of the route
        desired_fn: Callable building the desired route from the route spec
        now: Timestamp for condition transitions

    Returns:
        RouteResult: Recomputed route status, the action taken, and a deferred error

    Raises:
        ApiException: On conflicts, which are retried without touching status
    """
    route_spec = (observer.get("spec") or {}).get(field) or {}
    state = policy.management_state(route_spec)
    generation = observer["metadata"].get("generation", 0)
    previous = ((observer.get("status") or {}).get(field) or {}).get("conditions")

    if state == policy.UNMANAGED:
        logger.debug(f"Route {namespace}/{name} is unmanaged")
        return RouteResult({"conditions": []}, policy.NOOP, None)

    action = policy.NOOP
    error = None
    try:
        current = client.get_route(namespace, name)
        desired = desired_fn(route_spec) if state == policy.MANAGED else None
        decision = policy.evaluate(route_spec, current, desired)
        action = decision.action

        if action == policy.CREATE:
            client.create_route(namespace, desired)
        elif action == policy.UPDATE:
            client.replace_route(namespace, name, _updated_route(current, desired))
        elif action == policy.DELETE:
            client.delete_route(namespace, name)
        templates = decision.conditions

    except RouteError as e:
        logger.warning(f"Route {namespace}/{name} cannot reach state {state}: {e.message}")
        templates = policy.failure_conditions(state, e.reason, e.message)
        error = e
    except ApiException as e:
        if is_conflict(e):
            raise
        reason = "RemovalFailed" if state == policy.REMOVED else "ApplyFailed"
        verb = action if action != policy.NOOP else "read"
        logger.error(f"Failed to {verb} route {namespace}/{name}: {str(e)}")
        templates = policy.failure_conditions(state, reason, f"Failed to {verb} route: {e.reason}")
        error = e

    status = {"conditions": conditions.merge(previous, templates, generation, now)}
    return RouteResult(status, action, error)
