"""
Error taxonomy shared by the parent handlers and the sub-controllers.
"""

import logging
import kopf
import urllib3
from kubernetes.client.rest import ApiException

from . import config

logger = logging.getLogger(__name__)

NOT_FOUND = "not-found"
CONFLICT = "conflict"
TRANSIENT = "transient"
POLICY = "policy"
CONSTRUCTION = "construction"


class RouteError(Exception):
    """The desired route state cannot be achieved (surfaced as Degraded)."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class SubControllerError(Exception):
    """A sub-controller could not be constructed or its watches registered."""


class ControllerStopped(Exception):
    """Raised when a stopped sub-controller attempts a cluster API call."""


def is_not_found(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 404


def is_conflict(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 409


def classify(e: Exception) -> str:
    """
    Map an exception onto the controller's error kinds.

    Args:
        e: The exception raised during a reconcile pass

    Returns:
        str: One of NOT_FOUND, CONFLICT, TRANSIENT, POLICY, CONSTRUCTION
    """
    if is_not_found(e):
        return NOT_FOUND
    if is_conflict(e):
        return CONFLICT
    if isinstance(e, RouteError):
        return POLICY
    if isinstance(e, SubControllerError):
        return CONSTRUCTION
    # ApiException (5xx, 429, ...), urllib3 transport errors and anything else
    return TRANSIENT


def requeue_error(e: Exception, retry: int) -> kopf.TemporaryError:
    """
    Convert an error raised inside a kopf handler into a kopf retry.

    Conflicts are retried after a fixed short delay; every other kind backs off
    exponentially with kopf's retry counter.
    """
    kind = classify(e)
    if kind == CONFLICT:
        delay = config.CONFLICT_RETRY_SECONDS
    else:
        delay = config.backoff_delay(retry)
    if isinstance(e, urllib3.exceptions.HTTPError):
        logger.warning(f"Transport error talking to the API server: {str(e)}")
    return kopf.TemporaryError(f"{kind} error: {str(e)}", delay=delay)
