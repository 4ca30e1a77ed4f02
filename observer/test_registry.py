import threading
import unittest
from unittest.mock import MagicMock

from .errors import SubControllerError
from .registry import ControllerRegistry


class FakeController:
    def __init__(self, owner_namespace, owner_name, namespace):
        self.owner = f"{owner_namespace}/{owner_name}"
        self.namespace = namespace
        self.stopped = False
        self.started = False
        self.stop_calls = 0
        self.joined = False
        self.notifications = []

    def start(self):
        self.started = True

    def stop(self):
        self.stop_calls += 1
        self.stopped = True

    def join(self, timeout=None):
        self.joined = True

    def notify(self, resource):
        if self.stopped:
            return False
        self.notifications.append(resource)
        return True

    def describe(self):
        return {"owner": self.owner, "namespace": self.namespace}


class TestControllerRegistry(unittest.TestCase):
    def setUp(self):
        self.registry = ControllerRegistry(factory=FakeController, join_timeout=0.1)

    def test_ensure_reuses_running_controller(self):
        first = self.registry.ensure("dh", "ops", "obs")
        second = self.registry.ensure("dh", "ops", "obs")

        self.assertIs(first, second)
        self.assertTrue(first.started)
        self.assertEqual(len(self.registry), 1)

    def test_ensure_replaces_controller_of_other_owner(self):
        old = self.registry.ensure("dh", "ops", "old")
        new = self.registry.ensure("dh", "ops", "new")

        self.assertIsNot(old, new)
        self.assertTrue(old.stopped)
        self.assertTrue(old.joined)
        self.assertEqual(self.registry.get("dh").owner, "ops/new")

    def test_ensure_replaces_stopped_controller(self):
        old = self.registry.ensure("dh", "ops", "obs")
        old.stop()
        self.assertIsNot(self.registry.ensure("dh", "ops", "obs"), old)

    def test_lifecycles_are_isolated(self):
        """Test that stopping one namespace leaves the others running"""
        a = self.registry.ensure("ns-a", "ops", "a")
        b = self.registry.ensure("ns-b", "ops", "b")

        self.assertTrue(self.registry.stop("ns-a"))

        self.assertTrue(a.stopped)
        self.assertFalse(b.stopped)
        self.assertTrue(self.registry.notify("ns-b", {"metadata": {"name": "b"}}))
        self.assertFalse(self.registry.notify("ns-a", {"metadata": {"name": "a"}}))
        self.assertEqual(self.registry.namespaces(), ["ns-b"])

    def test_stop_is_idempotent(self):
        handle = self.registry.ensure("dh", "ops", "obs")
        self.assertTrue(self.registry.stop("dh"))
        self.assertFalse(self.registry.stop("dh"))
        self.assertEqual(handle.stop_calls, 1)
        self.assertNotIn("dh", self.registry)

    def test_release_keeps_current_target(self):
        """Test that a retargeted Observer releases only its previous namespaces"""
        old = self.registry.ensure("ns-old", "ops", "obs")
        current = self.registry.ensure("ns-new", "ops", "obs")
        other = self.registry.ensure("ns-other", "ops", "other")

        released = self.registry.release("ops", "obs", keep="ns-new")

        self.assertEqual(released, ["ns-old"])
        self.assertTrue(old.stopped)
        self.assertFalse(current.stopped)
        self.assertFalse(other.stopped)

    def test_factory_failure_is_wrapped(self):
        registry = ControllerRegistry(factory=MagicMock(side_effect=RuntimeError("no api")))
        with self.assertRaises(SubControllerError):
            registry.ensure("dh", "ops", "obs")
        self.assertEqual(len(registry), 0)

    def test_start_failure_stops_controller(self):
        handle = MagicMock(owner="ops/obs", stopped=False)
        handle.start.side_effect = RuntimeError("boom")
        registry = ControllerRegistry(factory=MagicMock(return_value=handle))

        with self.assertRaises(SubControllerError):
            registry.ensure("dh", "ops", "obs")

        handle.stop.assert_called_once()
        self.assertNotIn("dh", registry)

    def test_stop_all(self):
        handles = [self.registry.ensure(ns, "ops", ns) for ns in ("a", "b", "c")]
        self.registry.stop_all()
        self.assertTrue(all(h.stopped and h.joined for h in handles))
        self.assertEqual(len(self.registry), 0)

    def test_concurrent_notify_and_stop(self):
        """Test that notifications racing a stop never reach a stopped controller"""
        handle = self.registry.ensure("dh", "ops", "obs")
        delivered_after_stop = []

        def notifier():
            for i in range(200):
                if self.registry.notify("dh", {"n": i}) and handle.stop_calls:
                    delivered_after_stop.append(i)

        thread = threading.Thread(target=notifier)
        thread.start()
        self.registry.stop("dh")
        thread.join(2)

        self.assertEqual(delivered_after_stop, [])

    def test_describe(self):
        self.registry.ensure("dh", "ops", "obs")
        self.assertEqual(self.registry.describe(), [{"owner": "ops/obs", "namespace": "dh"}])


if __name__ == '__main__':
    unittest.main()
