"""
Claim resolution between Observers and detection of the managed workload.

Several Observers may point at the same target namespace; exactly one of them
manages it. An Observer that already references a workload in the namespace
keeps it (first claim wins). While nobody holds a claim, the earliest created
Observer wins, so every contender reaches the same verdict without
coordinating.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from . import config
from .routes.client import ClusterClient

logger = logging.getLogger(__name__)


def observer_key(observer: Dict[str, Any]) -> Tuple[str, str]:
    meta = observer.get("metadata") or {}
    return meta.get("namespace"), meta.get("name")


def target_namespace(observer: Dict[str, Any]) -> str:
    return (observer.get("spec") or {}).get("targetNamespace") or config.TARGET_NAMESPACE


def bridge_namespace(observer: Dict[str, Any]) -> str:
    return (observer.get("spec") or {}).get("bridgeNamespace") or config.BRIDGE_NAMESPACE


def _is_live(observer: Dict[str, Any]) -> bool:
    return not (observer.get("metadata") or {}).get("deletionTimestamp")


def _claims(observer: Dict[str, Any], namespace: str) -> bool:
    reference = (observer.get("status") or {}).get("managedReference") or {}
    return reference.get("namespace") == namespace


def _age_key(observer: Dict[str, Any]):
    meta = observer.get("metadata") or {}
    return meta.get("creationTimestamp") or "", meta.get("namespace") or "", meta.get("name") or ""


def resolve_claim(observer: Dict[str, Any], observers: Iterable[Dict[str, Any]]) -> Tuple[str, str]:
    """
    Decide which Observer manages the target namespace of ``observer``.

    Args:
        observer: The Observer being reconciled (freshly read)
        observers: Every Observer in the cluster

    Returns:
        (namespace, name) of the Observer holding the claim
    """
    namespace = target_namespace(observer)
    own_key = observer_key(observer)

    contenders = {own_key: observer}
    for other in observers:
        key = observer_key(other)
        if key == own_key or not _is_live(other) or target_namespace(other) != namespace:
            continue
        contenders[key] = other

    holders = [o for o in contenders.values() if _claims(o, namespace)]
    candidates = holders or list(contenders.values())
    winner = min(candidates, key=_age_key)
    return observer_key(winner)


def holds_claim(observer: Dict[str, Any], observers: Iterable[Dict[str, Any]]) -> bool:
    return resolve_claim(observer, observers) == observer_key(observer)


def workload_reference(workload: Dict[str, Any]) -> Dict[str, Any]:
    meta = workload["metadata"]
    return {
        "apiVersion": workload.get("apiVersion", f"{config.WORKLOAD_GROUP}/{config.WORKLOAD_VERSION}"),
        "kind": workload.get("kind"),
        "name": meta["name"],
        "namespace": meta.get("namespace"),
        "uid": meta.get("uid"),
        "resourceVersion": meta.get("resourceVersion"),
    }


def detect_workload(client: ClusterClient, namespace: str) -> Optional[Dict[str, Any]]:
    """Return a reference to the workload living in ``namespace``, if any."""
    workloads = [w for w in client.list_workloads(namespace) if _is_live(w)]
    if not workloads:
        logger.info(f"No {config.WORKLOAD_PLURAL} found in namespace {namespace}")
        return None
    workloads.sort(key=lambda w: w["metadata"]["name"])
    if len(workloads) > 1:
        logger.warning(f"Found {len(workloads)} {config.WORKLOAD_PLURAL} in namespace {namespace}, "
                       f"managing {workloads[0]['metadata']['name']}")
    return workload_reference(workloads[0])
