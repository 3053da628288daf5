import json
import math
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from filerelay import config as relay_config


class LoadConfigTests(unittest.TestCase):
    def setUp(self):
        self._env = mock.patch.dict(os.environ, {}, clear=False)
        self._env.start()
        for key in list(os.environ):
            if key.startswith("FILERELAY_"):
                os.environ.pop(key)

    def tearDown(self):
        self._env.stop()

    def test_defaults(self):
        config = relay_config.load_config()
        self.assertEqual(config["max_upload_size_mb"], 100.0)
        self.assertEqual(config["registry_capacity"], 1000.0)
        self.assertEqual(config["sweep_interval_seconds"], 60.0)
        self.assertEqual(config["search_min_length"], 3.0)
        self.assertEqual(relay_config.max_upload_bytes(config), 100 * 1024 * 1024)
        self.assertFalse(config["providers"]["catbox"]["enabled"])
        self.assertTrue(config["providers"]["gofile"]["enabled"])

    def test_rejects_nan_and_infinity(self):
        config = relay_config.load_config(
            {"max_upload_size_mb": float("nan"), "registry_capacity": float("inf")}
        )
        self.assertFalse(math.isnan(config["max_upload_size_mb"]))
        self.assertEqual(config["max_upload_size_mb"], 100.0)
        self.assertEqual(config["registry_capacity"], 1000.0)

    def test_non_positive_values_fall_back(self):
        config = relay_config.load_config({"sweep_interval_seconds": -5, "max_page_limit": "abc"})
        self.assertEqual(config["sweep_interval_seconds"], 60.0)
        self.assertEqual(config["max_page_limit"], 100.0)

    def test_fractional_upload_limit_allowed(self):
        config = relay_config.load_config({"max_upload_size_mb": 0.5})
        self.assertEqual(relay_config.max_upload_bytes(config), 512 * 1024)

    def test_fractional_upload_limit_from_environment(self):
        os.environ["FILERELAY_MAX_UPLOAD_SIZE_MB"] = "0.5"

        config = relay_config.load_config()

        self.assertEqual(config["max_upload_size_mb"], 0.5)
        self.assertEqual(relay_config.max_upload_bytes(config), 512 * 1024)

    def test_unknown_providers_dropped_from_order(self):
        config = relay_config.load_config({"provider_order": ["gofile", "dropbox", "GOFILE", "file_io"]})
        self.assertEqual(config["provider_order"], ["gofile", "file_io"])

    def test_provider_flags_and_retention(self):
        config = relay_config.load_config(
            {"providers": {"litterbox": {"enabled": "yes", "retention": "72H"}, "gofile": {"enabled": "off"}}}
        )
        self.assertTrue(config["providers"]["litterbox"]["enabled"])
        self.assertEqual(config["providers"]["litterbox"]["retention"], "72h")
        self.assertFalse(config["providers"]["gofile"]["enabled"])

    def test_environment_overrides(self):
        os.environ["FILERELAY_MAX_UPLOAD_SIZE_MB"] = "5"
        os.environ["FILERELAY_PROVIDER_ORDER"] = "tmp_ninja, gofile"
        os.environ["FILERELAY_DISABLED_PROVIDERS"] = "gofile"
        os.environ["FILERELAY_SEARCH_MIN_LENGTH"] = "not-a-number"

        config = relay_config.load_config()

        self.assertEqual(config["max_upload_size_mb"], 5.0)
        self.assertEqual(config["provider_order"], ["tmp_ninja", "gofile"])
        self.assertFalse(config["providers"]["gofile"]["enabled"])
        self.assertEqual(config["search_min_length"], 3.0)

    def test_json_file_then_explicit_overrides(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text(
                json.dumps({"registry_capacity": 50, "cors_allow_origin": "https://example.test"}),
                encoding="utf-8",
            )
            os.environ["FILERELAY_CONFIG_PATH"] = str(path)

            config = relay_config.load_config({"registry_capacity": 75})

        self.assertEqual(config["registry_capacity"], 75.0)
        self.assertEqual(config["cors_allow_origin"], "https://example.test")

    def test_malformed_json_file_is_ignored(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text("{not json", encoding="utf-8")
            os.environ["FILERELAY_CONFIG_PATH"] = str(path)

            with self.assertLogs("filerelay.config", level="WARNING"):
                config = relay_config.load_config()

        self.assertEqual(config["registry_capacity"], 1000.0)


if __name__ == "__main__":
    unittest.main()
