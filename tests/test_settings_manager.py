import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from resolvarr.core.event_bus import EventBus
from resolvarr.core.settings_manager import SettingsManager


class TestSettingsManager(unittest.TestCase):
    def setUp(self):
        self.data_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.data_dir, True)

    def test_defaults_and_persistence(self):
        settings = SettingsManager(self.data_dir)
        self.assertEqual(settings.get("max_concurrent_requests"), 6)
        self.assertEqual(settings.get_float("search_ceiling_seconds"), 45.0)

        settings.set("max_source_attempts", 5)
        with open(os.path.join(self.data_dir, "settings.json")) as f:
            self.assertEqual(json.load(f)["max_source_attempts"], 5)
        self.assertEqual(SettingsManager(self.data_dir).get_int("max_source_attempts"), 5)

    def test_environment_overrides_file(self):
        with open(os.path.join(self.data_dir, "settings.json"), "w") as f:
            json.dump({"prowlarr_api_key": "from-file"}, f)
        with patch.dict(os.environ, {"RESOLVARR_PROWLARR_API_KEY": "from-env"}):
            settings = SettingsManager(self.data_dir)
        self.assertEqual(settings.get("prowlarr_api_key"), "from-env")

    def test_proxy_trust_from_environment(self):
        self.assertFalse(SettingsManager(self.data_dir).get_bool("trust_proxy_headers"))
        with patch.dict(os.environ, {"RESOLVARR_TRUST_PROXY_HEADERS": "false"}):
            self.assertFalse(SettingsManager(self.data_dir).get_bool("trust_proxy_headers"))
        with patch.dict(os.environ, {"RESOLVARR_TRUST_PROXY_HEADERS": "true"}):
            self.assertTrue(SettingsManager(self.data_dir).get_bool("trust_proxy_headers"))

    def test_corrupt_file_falls_back_to_defaults(self):
        with open(os.path.join(self.data_dir, "settings.json"), "w") as f:
            f.write("{not json")
        settings = SettingsManager(self.data_dir)
        self.assertEqual(settings.get("link_ttl_hours"), 24)

    def test_non_persistent_settings_write_nothing(self):
        target = os.path.join(self.data_dir, "ephemeral")
        settings = SettingsManager(target, persist=False)
        settings.update({"verify_cached_links": True})
        self.assertTrue(settings.get("verify_cached_links"))
        self.assertFalse(os.path.exists(target))

    def test_reset(self):
        settings = SettingsManager(self.data_dir)
        settings.set("session_liveness_seconds", 9)
        settings.reset()
        self.assertEqual(settings.get("session_liveness_seconds"), 5.0)


class TestEventBus(unittest.TestCase):
    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(_):
            raise RuntimeError("boom")

        bus.subscribe("evt", broken)
        bus.subscribe("evt", received.append)
        bus.subscribe("evt", received.append)
        bus.emit("evt", {"n": 1})
        self.assertEqual(received, [{"n": 1}])

        bus.unsubscribe("evt", received.append)
        bus.emit("evt", {"n": 2})
        self.assertEqual(received, [{"n": 1}])


if __name__ == "__main__":
    unittest.main()
