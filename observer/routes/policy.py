"""
Route reconciliation policy.

Maps a declared management state and the observed route onto the action to
take and the condition set to report. Nothing here talks to the cluster.
"""

from typing import Any, Dict, List, NamedTuple, Optional

from .. import conditions as c

MANAGED = "Managed"
UNMANAGED = "Unmanaged"
REMOVED = "Removed"
MANAGEMENT_STATES = (MANAGED, UNMANAGED, REMOVED)

NOOP = "noop"
CREATE = "create"
UPDATE = "update"
DELETE = "delete"

AWAITING_MESSAGE = "Waiting for a router to admit the route"


class Decision(NamedTuple):
    action: str
    conditions: List[Dict[str, str]]


def management_state(route_spec: Optional[Dict[str, Any]]) -> str:
    """Return the declared management state, defaulting to Managed."""
    state = (route_spec or {}).get("managementState") or MANAGED
    if state not in MANAGEMENT_STATES:
        # Rejected at the schema boundary; never guessed at here
        raise ValueError(f"Unsupported managementState: {state}")
    return state


def _comparable(route: Dict[str, Any], with_host: bool) -> Dict[str, Any]:
    spec = route.get("spec") or {}
    tls = spec.get("tls") or {}
    result = {
        "to": (spec.get("to") or {}).get("name"),
        "port": (spec.get("port") or {}).get("targetPort"),
        "termination": tls.get("termination"),
        "insecureEdgeTerminationPolicy": tls.get("insecureEdgeTerminationPolicy"),
        "destinationCACertificate": tls.get("destinationCACertificate"),
    }
    if with_host:
        result["host"] = spec.get("host")
    return result


def route_matches(current: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    """
    Compare the parts of a route the controller declares.

    The host only counts when the desired route names one; otherwise the
    platform-assigned host is accepted.
    """
    with_host = bool((desired.get("spec") or {}).get("host"))
    return _comparable(current, with_host) == _comparable(desired, with_host)


def admission_status(route: Dict[str, Any]) -> Optional[str]:
    """
    Return "True" once any router admitted the route, "False" when every
    reporting router rejected it, None while no router reported yet.
    """
    statuses = []
    for ingress in (route.get("status") or {}).get("ingress") or []:
        for cond in ingress.get("conditions") or []:
            if cond.get("type") == "Admitted":
                statuses.append(cond.get("status"))
    if c.TRUE in statuses:
        return c.TRUE
    if statuses:
        return c.FALSE
    return None


def decide(state: str, current: Optional[Dict[str, Any]], desired: Optional[Dict[str, Any]]) -> str:
    """Select the action that moves the observed route towards the declared state."""
    if state == UNMANAGED:
        return NOOP
    if state == REMOVED:
        # Intent over the route name: ownership markers are not consulted
        return DELETE if current is not None else NOOP
    if current is None:
        return CREATE
    if desired is not None and not route_matches(current, desired):
        return UPDATE
    return NOOP


def conditions_for(state: str, action: str, current: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Condition set reported after the action succeeded."""
    if state != MANAGED:
        return []
    if action == CREATE:
        return [c.condition(c.EXPOSED, c.UNKNOWN, "AwaitingAdmission", AWAITING_MESSAGE)]
    if action == UPDATE:
        return [c.condition(c.EXPOSED, c.TRUE, "Updated", "Route updated to the desired state")]

    admitted = admission_status(current or {})
    if admitted == c.TRUE:
        return [c.condition(c.EXPOSED, c.TRUE, "Admitted", "Route is exposed")]
    if admitted == c.FALSE:
        return [
            c.condition(c.EXPOSED, c.FALSE, "NotAdmitted", "Route was rejected by the router"),
            c.condition(c.DEGRADED, c.TRUE, "NotAdmitted", "Route was rejected by the router"),
        ]
    return [c.condition(c.EXPOSED, c.UNKNOWN, "AwaitingAdmission", AWAITING_MESSAGE)]


def failure_conditions(state: str, reason: str, message: str) -> List[Dict[str, str]]:
    """Condition set reported when the desired state could not be achieved."""
    if state == UNMANAGED:
        return []
    if state == REMOVED:
        return [c.condition(c.DEGRADED, c.TRUE, reason or "RemovalFailed", message)]
    return [
        c.condition(c.EXPOSED, c.FALSE, reason, message),
        c.condition(c.DEGRADED, c.TRUE, reason, message),
    ]


def evaluate(route_spec: Optional[Dict[str, Any]], current: Optional[Dict[str, Any]],
             desired: Optional[Dict[str, Any]]) -> Decision:
    """Combine decide() and conditions_for() for one route."""
    state = management_state(route_spec)
    action = decide(state, current, desired)
    return Decision(action, conditions_for(state, action, current))
