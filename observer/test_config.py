import unittest
from unittest.mock import patch

from . import config


class TestConfig(unittest.TestCase):
    def test_parse_selector(self):
        self.assertEqual(config.parse_selector(config.DEFAULT_SERVICE_SELECTOR), {
            "datahub.sap.com/app": "vsystem",
            "datahub.sap.com/app-component": "vsystem",
        })
        self.assertEqual(config.parse_selector(" a = b ,, c"), {"a": "b"})

    def test_backoff_delay(self):
        with patch.object(config, 'BACKOFF_BASE_SECONDS', 1.0), patch.object(config, 'BACKOFF_MAX_SECONDS', 60.0):
            self.assertEqual([config.backoff_delay(r) for r in (0, 1, 3, 10, 1000)], [1.0, 2.0, 8.0, 60.0, 60.0])
            self.assertEqual(config.backoff_delay(-1), 1.0)


if __name__ == '__main__':
    unittest.main()
