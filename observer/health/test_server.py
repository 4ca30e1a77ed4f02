import unittest
from unittest.mock import MagicMock, patch

from . import server


class TestHealthServer(unittest.TestCase):
    def setUp(self):
        self.client = server.app.test_client()

    def tearDown(self):
        server.mark_not_ready()
        server.bind_registry(None)

    def test_healthz(self):
        response = self.client.get('/healthz')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {"status": "healthy"})

    def test_readyz_follows_startup(self):
        """Test that readiness only reports ready after startup completed"""
        self.assertEqual(self.client.get('/readyz').status_code, 503)

        server.mark_ready()
        response = self.client.get('/readyz')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {"status": "ready"})

    def test_controllers_lists_registry(self):
        registry = MagicMock()
        registry.describe.return_value = [{"owner": "ops/obs", "namespace": "dh"}]
        server.bind_registry(registry)

        response = self.client.get('/controllers')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {"controllers": [{"owner": "ops/obs", "namespace": "dh"}]})

    def test_controllers_without_registry(self):
        self.assertEqual(self.client.get('/controllers').get_json(), {"controllers": []})

    def test_start_health_server(self):
        with patch.object(server.app, 'run') as mock_run:
            server.start_health_server(9000)
        mock_run.assert_called_once_with(host="0.0.0.0", port=9000, threaded=True)


if __name__ == '__main__':
    unittest.main()
