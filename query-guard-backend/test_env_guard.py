"""
Tests for startup environment validation.
"""

import os
import unittest
from unittest.mock import patch

import env_guard


@patch("env_guard.load_dotenv", lambda: None)
class TestEnvGuard(unittest.TestCase):

    def test_packages_importable(self):
        errors, info = env_guard.validate_packages()
        self.assertEqual(errors, [])
        self.assertEqual(len(info), len(env_guard.REQUIRED_PACKAGES))

    def test_missing_package_reported(self):
        with patch.object(env_guard, "REQUIRED_PACKAGES", [("not_a_real_module_xyz", "not-real", None)]):
            errors, _ = env_guard.validate_packages()
        self.assertEqual(len(errors), 1)
        self.assertIn("pip install not-real", errors[0])

    def test_missing_database_url(self):
        with patch.dict(os.environ, {}, clear=True):
            errors = env_guard.validate_env_vars()
        self.assertEqual(len(errors), 1)
        self.assertIn("DATABASE_URL", errors[0])

    def test_unknown_dialect(self):
        with patch.dict(os.environ, {"DATABASE_URL": "nosuchdb://user@host/db"}, clear=True):
            errors = env_guard.validate_database_url()
        self.assertEqual(len(errors), 1)

    def test_valid_environment(self):
        with patch.dict(os.environ, {"DATABASE_URL": "sqlite:///:memory:"}, clear=True):
            self.assertTrue(env_guard.validate_environment(strict=True))

    def test_strict_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            self.assertFalse(env_guard.validate_environment(strict=False))
            with self.assertRaises(EnvironmentError):
                env_guard.validate_environment(strict=True)


if __name__ == "__main__":
    unittest.main()
