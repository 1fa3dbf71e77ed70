"""
Tests for environment-driven settings.
"""

import os
import unittest
from unittest.mock import patch

from config import GuardSettings


class TestGuardSettings(unittest.TestCase):

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = GuardSettings.from_env()
        self.assertIsNone(settings.database_url)
        self.assertEqual(settings.max_rows, 10000)
        self.assertEqual(settings.timeout_seconds, 30.0)
        self.assertEqual(settings.cache_ttl_seconds, 3600)
        self.assertFalse(settings.sampling_enabled)
        self.assertEqual(settings.dataset_schema, "csv_to_table")

    def test_overrides(self):
        env = {
            "DATABASE_URL": "sqlite:///data.db",
            "QUERY_MAX_ROWS": "250",
            "QUERY_TIMEOUT_SECONDS": "2.5",
            "SAMPLING_ENABLED": "yes",
            "STRICT_TABLE_IDENTITY": "1",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = GuardSettings.from_env()
        self.assertEqual(settings.database_url, "sqlite:///data.db")
        self.assertEqual(settings.max_rows, 250)
        self.assertEqual(settings.timeout_seconds, 2.5)
        self.assertTrue(settings.sampling_enabled)
        self.assertTrue(settings.strict_table_identity)
        self.assertEqual(settings.log_level, "DEBUG")

    def test_invalid_numbers_fall_back(self):
        with patch.dict(os.environ, {"QUERY_MAX_ROWS": "lots", "QUERY_TIMEOUT_SECONDS": "soon"}, clear=True):
            settings = GuardSettings.from_env()
        self.assertEqual(settings.max_rows, 10000)
        self.assertEqual(settings.timeout_seconds, 30.0)


if __name__ == "__main__":
    unittest.main()
