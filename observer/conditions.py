"""
Helpers for Kubernetes-style status conditions.

Conditions are plain dicts so they can be written to the status subresource
as-is. They are keyed by ``type``: a block never holds two conditions of the
same type.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

EXPOSED = "Exposed"
DEGRADED = "Degraded"
READY = "Ready"
PROGRESSING = "Progressing"
BACKUP = "Backup"

CONDITION_TYPES = (EXPOSED, DEGRADED, READY, PROGRESSING, BACKUP)

TRUE = "True"
FALSE = "False"
UNKNOWN = "Unknown"


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def condition(type_: str, status: str, reason: str, message: str = "") -> Dict[str, str]:
    """Build a condition template without timestamp or generation."""
    if type_ not in CONDITION_TYPES:
        raise ValueError(f"Unknown condition type: {type_}")
    if status not in (TRUE, FALSE, UNKNOWN):
        raise ValueError(f"Invalid condition status: {status}")
    if not reason:
        raise ValueError("Condition reason must not be empty")
    return {"type": type_, "status": status, "reason": reason, "message": message}


def find(conditions: Optional[List[Dict[str, Any]]], type_: str) -> Optional[Dict[str, Any]]:
    for cond in conditions or []:
        if cond.get("type") == type_:
            return cond
    return None


def merge(
    previous: Optional[List[Dict[str, Any]]],
    desired: List[Dict[str, str]],
    generation: int,
    now: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Recompute a condition block.

    The result holds exactly the desired conditions, in the desired order. A
    condition keeps the lastTransitionTime of its previous incarnation unless
    its status changed.

    Args:
        previous: Conditions currently stored on the resource
        desired: Condition templates produced by this reconcile pass
        generation: metadata.generation of the resource the pass observed
        now: Timestamp to use for transitions (defaults to current UTC time)

    Returns:
        List of conditions ready to be written to the status subresource
    """
    now = now or utc_now()
    result = []
    seen = set()
    for template in desired:
        type_ = template["type"]
        if type_ in seen:
            raise ValueError(f"Duplicate condition type: {type_}")
        seen.add(type_)

        old = find(previous, type_)
        if old is not None and old.get("status") == template["status"] and old.get("lastTransitionTime"):
            transition_time = old["lastTransitionTime"]
        else:
            transition_time = now

        result.append({
            "type": type_,
            "status": template["status"],
            "reason": template["reason"],
            "message": template.get("message", ""),
            "lastTransitionTime": transition_time,
            "observedGeneration": generation,
        })
    return result


def is_true(conditions: Optional[List[Dict[str, Any]]], type_: str) -> bool:
    cond = find(conditions, type_)
    return cond is not None and cond.get("status") == TRUE


def is_stale(cond: Dict[str, Any], generation: int) -> bool:
    """True when the condition was computed for an older spec revision."""
    return cond.get("observedGeneration") != generation
