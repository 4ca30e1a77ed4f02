import os
from typing import Dict

# Observer custom resource
GROUP = "observer.k8s.io"
VERSION = "v1alpha1"
PLURAL = "observers"
KIND = "Observer"

# Route API
ROUTE_GROUP = "route.openshift.io"
ROUTE_VERSION = "v1"
ROUTE_PLURAL = "routes"

MANAGED_BY_LABEL = "created-by"
MANAGED_BY_VALUE = "route-observer-controller"
OWNER_LABEL = "observer.k8s.io/owner"

DEFAULT_SERVICE_SELECTOR = "datahub.sap.com/app=vsystem,datahub.sap.com/app-component=vsystem"


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, default))


# Namespace scope, overridable from the command line
NAMESPACE = os.getenv("NAMESPACE", "")
TARGET_NAMESPACE = os.getenv("TARGET_NAMESPACE", "")
BRIDGE_NAMESPACE = os.getenv("BRIDGE_NAMESPACE", "")

RECONCILE_INTERVAL = _int_env("RECONCILE_INTERVAL", 60)
WORKLOAD_RESYNC_SECONDS = _int_env("WORKLOAD_RESYNC_SECONDS", 180)
CORE_RESYNC_SECONDS = _int_env("CORE_RESYNC_SECONDS", 600)
ROUTE_RESYNC_SECONDS = _int_env("ROUTE_RESYNC_SECONDS", 600)

WORKER_COUNT = _int_env("WORKER_COUNT", 1)
BACKOFF_BASE_SECONDS = float(os.getenv("BACKOFF_BASE_SECONDS", 1))
BACKOFF_MAX_SECONDS = float(os.getenv("BACKOFF_MAX_SECONDS", 300))
CONFLICT_RETRY_SECONDS = float(os.getenv("CONFLICT_RETRY_SECONDS", 1))
REQUEST_TIMEOUT_SECONDS = _int_env("REQUEST_TIMEOUT_SECONDS", 30)
WATCH_TIMEOUT_SECONDS = _int_env("WATCH_TIMEOUT_SECONDS", 60)

# Managed workload
WORKLOAD_GROUP = os.getenv("WORKLOAD_GROUP", "installers.datahub.sap.com")
WORKLOAD_VERSION = os.getenv("WORKLOAD_VERSION", "v1alpha1")
WORKLOAD_PLURAL = os.getenv("WORKLOAD_PLURAL", "datahubs")
WORKLOAD_SERVICE_SELECTOR = os.getenv("WORKLOAD_SERVICE_SELECTOR", DEFAULT_SERVICE_SELECTOR)
WORKLOAD_SERVICE_PORT = os.getenv("WORKLOAD_SERVICE_PORT", "vsystem")
CA_BUNDLE_SECRET_NAME = os.getenv("CA_BUNDLE_SECRET_NAME", "ca-bundle.pem")
CA_BUNDLE_SECRET_KEY = os.getenv("CA_BUNDLE_SECRET_KEY", "ca-bundle.pem")

PRIMARY_ROUTE_NAME = os.getenv("PRIMARY_ROUTE_NAME", "vsystem")
SECONDARY_ROUTE_NAME = os.getenv("SECONDARY_ROUTE_NAME", "sap-slcbridge")
BRIDGE_SERVICE_NAME = os.getenv("BRIDGE_SERVICE_NAME", "slcbridgebase-service")
BRIDGE_SERVICE_PORT = os.getenv("BRIDGE_SERVICE_PORT", "https")

HEALTH_PORT = _int_env("HEALTH_PORT", 8081)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def parse_selector(selector: str) -> Dict[str, str]:
    """Parse a label selector string (``k=v,k2=v2``) into a dict."""
    result = {}
    for part in selector.split(","):
        part = part.strip()
        if "=" in part:
            key, value = part.split("=", 1)
            result[key.strip()] = value.strip()
    return result


def backoff_delay(retry: int) -> float:
    """Exponential backoff delay for the given retry number, capped."""
    exponent = min(max(retry, 0), 30)
    return min(BACKOFF_BASE_SECONDS * (2 ** exponent), BACKOFF_MAX_SECONDS)
