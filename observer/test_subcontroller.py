import copy
import unittest
from unittest.mock import MagicMock, patch

from kubernetes.client.rest import ApiException

from . import config
from .errors import ControllerStopped, RouteError, SubControllerError
from .routes.manager import RouteResult
from .subcontroller import SubController

NOW = "2026-01-01T00:00:00Z"

STALE_EXPOSED = {"type": "Exposed", "status": "True", "reason": "Admitted", "message": "Route is exposed",
                 "lastTransitionTime": NOW, "observedGeneration": 1}


def _observer(managed_namespace="dh", primary_status=None, route_spec=None):
    status = {}
    if managed_namespace:
        status["managedReference"] = {"kind": "DataHub", "name": "datahub", "namespace": managed_namespace}
    if primary_status is not None:
        status["primaryRoute"] = primary_status
    return {
        "metadata": {"name": "obs", "namespace": "ops", "generation": 2, "resourceVersion": "11"},
        "spec": {"targetNamespace": "dh", "primaryRoute": route_spec or {}},
        "status": status,
    }


class TestSubController(unittest.TestCase):
    def setUp(self):
        self.custom_api = MagicMock()
        self.core_api = MagicMock()
        self.controller = SubController("ops", "obs", "dh", custom_api=self.custom_api, core_api=self.core_api)
        self.controller.client = MagicMock()
        self.controller.client.guard = self.controller._ensure_running

    def tearDown(self):
        self.controller.stop()

    def test_registers_namespace_scoped_watches(self):
        """Test that the workload, service, secret and route informers are scoped to the target namespace"""
        self.assertEqual(self.controller.factories.kinds(), ["routes", "secrets", "services", "workloads"])
        routes = self.controller.factories.informer("routes", None, 0)
        self.assertEqual(routes.list_kwargs, {
            "namespace": "dh",
            "group": config.ROUTE_GROUP,
            "version": config.ROUTE_VERSION,
            "plural": config.ROUTE_PLURAL,
        })
        self.assertEqual(self.controller.name, "ManagedObserver-ops-obs")

    def test_managed_route_waits_for_workload(self):
        """Test that without a workload the route is left alone and reported as not exposed"""
        self.controller.client.get_observer.return_value = _observer(
            managed_namespace=None, primary_status={"conditions": [STALE_EXPOSED]})

        with patch('observer.subcontroller.manage_route') as mock_manage:
            self.controller.reconcile(self.controller.key)

        mock_manage.assert_not_called()
        patched = self.controller.client.patch_observer_status.call_args[0][3]["primaryRoute"]["conditions"]
        self.assertEqual([(x["type"], x["status"], x["reason"]) for x in patched],
                         [("Exposed", "False", "WorkloadNotFound")])
        self.assertEqual(patched[0]["observedGeneration"], 2)

    def test_removed_route_is_deleted_without_workload(self):
        """Test that Removed deletes the route even when no workload is recorded"""
        self.controller.client.get_observer.return_value = _observer(
            managed_namespace=None, primary_status={"conditions": [STALE_EXPOSED]},
            route_spec={"managementState": "Removed"})
        self.controller.client.get_route.return_value = {"metadata": {"name": config.PRIMARY_ROUTE_NAME}}

        self.controller.reconcile(self.controller.key)

        self.controller.client.delete_route.assert_called_once_with("dh", config.PRIMARY_ROUTE_NAME)
        self.controller.client.patch_observer_status.assert_called_once_with(
            "ops", "obs", "11", {"primaryRoute": {"conditions": []}})

    def test_unmanaged_route_clears_conditions_without_workload(self):
        self.controller.client.get_observer.return_value = _observer(
            managed_namespace=None, primary_status={"conditions": [STALE_EXPOSED]},
            route_spec={"managementState": "Unmanaged"})

        self.controller.reconcile(self.controller.key)

        self.controller.client.get_route.assert_not_called()
        self.controller.client.delete_route.assert_not_called()
        self.controller.client.patch_observer_status.assert_called_once_with(
            "ops", "obs", "11", {"primaryRoute": {"conditions": []}})

    def test_route_converges_to_declared_hostname(self):
        """Test that a declared hostname yields a created route which is reported exposed once admitted"""
        client = self.controller.client
        observer = _observer(route_spec={"hostname": "x"})
        client.get_observer.return_value = observer
        client.find_service.return_value = {"metadata": {"name": "vsystem"}}
        client.get_ca_bundle.return_value = None
        client.get_route.return_value = None

        self.controller.reconcile(self.controller.key)

        namespace, created = client.create_route.call_args[0]
        self.assertEqual(namespace, "dh")
        self.assertEqual(created["spec"]["host"], "x")
        self.assertEqual(created["spec"]["tls"]["termination"], "reencrypt")
        first = client.patch_observer_status.call_args[0][3]["primaryRoute"]
        self.assertEqual(first["conditions"][0]["status"], "Unknown")

        admitted = copy.deepcopy(created)
        admitted["status"] = {"ingress": [{"host": "x", "conditions": [{"type": "Admitted", "status": "True"}]}]}
        client.get_route.return_value = admitted
        observer["status"]["primaryRoute"] = first
        client.reset_mock(return_value=False, side_effect=False)

        self.controller.reconcile(self.controller.key)

        client.create_route.assert_not_called()
        client.replace_route.assert_not_called()
        second = client.patch_observer_status.call_args[0][3]["primaryRoute"]
        self.assertEqual([(x["type"], x["status"], x["reason"]) for x in second["conditions"]],
                         [("Exposed", "True", "Admitted")])

    def test_reconcile_missing_observer_is_noop(self):
        self.controller.client.get_observer.return_value = None
        with patch('observer.subcontroller.manage_route') as mock_manage:
            self.controller.reconcile(self.controller.key)
        mock_manage.assert_not_called()

    def test_reconcile_writes_primary_route_status(self):
        """Test that the primary route status is patched with the observed resourceVersion"""
        self.controller.client.get_observer.return_value = _observer()
        status = {"conditions": [{"type": "Exposed", "status": "Unknown"}]}

        with patch('observer.subcontroller.manage_route') as mock_manage:
            mock_manage.return_value = RouteResult(status, "create", None)
            self.controller.reconcile(self.controller.key)

        args = mock_manage.call_args[0]
        self.assertEqual(args[2:5], ("primaryRoute", "dh", config.PRIMARY_ROUTE_NAME))
        self.controller.client.patch_observer_status.assert_called_once_with("ops", "obs", "11",
                                                                            {"primaryRoute": status})

    def test_reconcile_without_changes_does_not_patch(self):
        status = {"conditions": [{"type": "Exposed", "status": "True"}]}
        self.controller.client.get_observer.return_value = _observer(primary_status=status)

        with patch('observer.subcontroller.manage_route') as mock_manage:
            mock_manage.return_value = RouteResult(status, "noop", None)
            self.controller.reconcile(self.controller.key)

        self.controller.client.patch_observer_status.assert_not_called()

    def test_reconcile_raises_deferred_error_after_status_write(self):
        self.controller.client.get_observer.return_value = _observer()
        error = RouteError("ServiceNotFound", "missing")
        status = {"conditions": [{"type": "Degraded", "status": "True"}]}

        with patch('observer.subcontroller.manage_route') as mock_manage:
            mock_manage.return_value = RouteResult(status, "noop", error)
            with self.assertRaises(RouteError):
                self.controller.reconcile(self.controller.key)

        self.controller.client.patch_observer_status.assert_called_once()

    def test_notification_enqueues_key(self):
        observer = _observer()
        self.assertTrue(self.controller.notify(observer))
        self.controller._on_notification(self.controller.mailbox.take(timeout=0.1))

        self.assertIs(self.controller.last_observed, observer)
        self.assertEqual(self.controller.engine.queue.get(timeout=0.1), ("ops", "obs"))

    def test_stop_is_idempotent_and_blocks_api_calls(self):
        """Test that a stopped controller drops notifications and refuses API calls"""
        self.controller.stop()
        self.controller.stop()

        self.assertTrue(self.controller.stopped)
        self.assertFalse(self.controller.notify(_observer()))
        with self.assertRaises(ControllerStopped):
            self.controller._ensure_running()
        with self.assertRaises(ControllerStopped):
            self.controller.start()

    def test_describe(self):
        info = self.controller.describe()
        self.assertEqual(info["owner"], "ops/obs")
        self.assertEqual(info["namespace"], "dh")
        self.assertFalse(info["started"])
        self.assertFalse(info["synced"])

    def test_watch_registration_failure_raises(self):
        with patch.object(SubController, '_register_watches', side_effect=ApiException(status=403)):
            with self.assertRaises(SubControllerError):
                SubController("ops", "obs", "dh", custom_api=self.custom_api, core_api=self.core_api)


if __name__ == '__main__':
    unittest.main()
