import base64
import logging
from typing import Any, Callable, Dict, List, Optional

import kubernetes
from kubernetes.client.rest import ApiException

from .. import config

logger = logging.getLogger(__name__)

_serializer = None


def to_dict(obj: Any) -> Dict[str, Any]:
    """Convert a typed kubernetes model into its API (camelCase) dict form."""
    global _serializer
    if isinstance(obj, dict):
        return obj
    if _serializer is None:
        _serializer = kubernetes.client.ApiClient()
    return _serializer.sanitize_for_serialization(obj)


def _noop_guard():
    pass


class ClusterClient:
    """
    Thin wrapper over the kubernetes API used by the reconcilers.

    Every call first runs ``guard``; a sub-controller passes a guard that raises
    once it has been stopped so that no API call is issued afterwards.
    """

    def __init__(self, custom_api=None, core_api=None, guard: Callable[[], None] = None,
                 request_timeout: int = None):
        self.custom_api = custom_api or kubernetes.client.CustomObjectsApi()
        self.core_api = core_api or kubernetes.client.CoreV1Api()
        self.guard = guard or _noop_guard
        self.request_timeout = request_timeout or config.REQUEST_TIMEOUT_SECONDS

    # Observer resources

    def get_observer(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        self.guard()
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=config.GROUP,
                version=config.VERSION,
                plural=config.PLURAL,
                namespace=namespace,
                name=name,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def list_observers(self) -> List[Dict[str, Any]]:
        self.guard()
        result = self.custom_api.list_cluster_custom_object(
            group=config.GROUP,
            version=config.VERSION,
            plural=config.PLURAL,
            _request_timeout=self.request_timeout,
        )
        return result.get("items", [])

    def patch_observer_status(self, namespace: str, name: str, resource_version: Optional[str],
                              status: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge-patch the status subresource.

        When resource_version is given the API server rejects the patch with 409
        if the object changed since it was read.
        """
        self.guard()
        body = {"status": status}
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        return self.custom_api.patch_namespaced_custom_object_status(
            group=config.GROUP,
            version=config.VERSION,
            plural=config.PLURAL,
            namespace=namespace,
            name=name,
            body=body,
            _request_timeout=self.request_timeout,
        )

    # Workload resources

    def list_workloads(self, namespace: str) -> List[Dict[str, Any]]:
        self.guard()
        result = self.custom_api.list_namespaced_custom_object(
            group=config.WORKLOAD_GROUP,
            version=config.WORKLOAD_VERSION,
            plural=config.WORKLOAD_PLURAL,
            namespace=namespace,
            _request_timeout=self.request_timeout,
        )
        return result.get("items", [])

    # Routes

    def get_route(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        self.guard()
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=config.ROUTE_GROUP,
                version=config.ROUTE_VERSION,
                plural=config.ROUTE_PLURAL,
                namespace=namespace,
                name=name,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def create_route(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self.guard()
        route = self.custom_api.create_namespaced_custom_object(
            group=config.ROUTE_GROUP,
            version=config.ROUTE_VERSION,
            plural=config.ROUTE_PLURAL,
            namespace=namespace,
            body=body,
            _request_timeout=self.request_timeout,
        )
        logger.info(f"Created route {namespace}/{body['metadata']['name']}")
        return route

    def replace_route(self, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Update a route; body must carry the resourceVersion that was read."""
        self.guard()
        route = self.custom_api.replace_namespaced_custom_object(
            group=config.ROUTE_GROUP,
            version=config.ROUTE_VERSION,
            plural=config.ROUTE_PLURAL,
            namespace=namespace,
            name=name,
            body=body,
            _request_timeout=self.request_timeout,
        )
        logger.info(f"Updated route {namespace}/{name}")
        return route

    def delete_route(self, namespace: str, name: str) -> bool:
        """Delete a route. Returns False when it was already gone."""
        self.guard()
        try:
            self.custom_api.delete_namespaced_custom_object(
                group=config.ROUTE_GROUP,
                version=config.ROUTE_VERSION,
                plural=config.ROUTE_PLURAL,
                namespace=namespace,
                name=name,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Route {namespace}/{name} already deleted")
                return False
            raise
        logger.info(f"Deleted route {namespace}/{name}")
        return True

    # Core objects

    def find_service(self, namespace: str, name: str = None, label_selector: str = None) -> Optional[Dict[str, Any]]:
        """Look a service up by name, or take the first one matching a label selector."""
        self.guard()
        if name:
            try:
                return to_dict(self.core_api.read_namespaced_service(
                    name=name, namespace=namespace, _request_timeout=self.request_timeout))
            except ApiException as e:
                if e.status == 404:
                    return None
                raise
        services = self.core_api.list_namespaced_service(
            namespace=namespace,
            label_selector=label_selector,
            _request_timeout=self.request_timeout,
        )
        items = sorted((to_dict(s) for s in services.items), key=lambda s: s["metadata"]["name"])
        return items[0] if items else None

    def get_ca_bundle(self, namespace: str, secret_name: str, key: str) -> Optional[str]:
        """Return the PEM CA bundle stored in a secret, or None if missing."""
        self.guard()
        try:
            secret = self.core_api.read_namespaced_secret(
                name=secret_name, namespace=namespace, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        data = to_dict(secret).get("data") or {}
        encoded = data.get(key)
        if not encoded:
            logger.warning(f"Secret {namespace}/{secret_name} has no key {key}")
            return None
        return base64.b64decode(encoded).decode()
