"""Tests for configuration loading and storage backends."""

import logging
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

# Add src to path so we can import buspulse
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from buspulse.config import load_config, setup_logging
from buspulse.errors import ConfigurationError
from buspulse.storage import InMemoryKeyValueStore, JsonFileKeyValueStore

FULL_CONFIG = """
data:
  stops_path: data/stops.json
  gtfs_dir: data/gtfs
  storage_path: ~/.buspulse/store.json
realtime:
  feed_urls:
    - https://example.com/tripupdates.pb
  poll_interval_seconds: 20
pulse:
  fold_threshold_minutes: 4
  damping_factor: 2
planner:
  minutes_per_stop: 3
logging:
  level: debug
"""


@patch("buspulse.config.load_dotenv")
class TestLoadConfig(unittest.TestCase):
    """Test YAML configuration parsing."""

    def setUp(self):
        """Set up test fixtures."""
        self._dir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._dir.name, "config.yaml")

    def tearDown(self):
        self._dir.cleanup()

    def _write(self, text):
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(text)

    def test_full_config(self, _):
        """Test loading every configuration section."""
        self._write(FULL_CONFIG)
        with patch.dict(os.environ, {"BUSPULSE_API_KEY": "secret"}):
            config = load_config(self.path)

        self.assertEqual(config.data.stops_path, "data/stops.json")
        self.assertEqual(config.data.gtfs_dir, "data/gtfs")
        self.assertEqual(config.realtime.feed_urls, ["https://example.com/tripupdates.pb"])
        self.assertEqual(config.realtime.api_key, "secret")
        self.assertEqual(config.realtime.poll_interval_seconds, 20)
        self.assertEqual(config.realtime.timeout_seconds, 10)
        self.assertEqual(config.pulse.fold_threshold_minutes, 4)
        self.assertEqual(config.pulse.damping_factor, 2)
        self.assertEqual(config.pulse.day_start_hour, 4)
        self.assertEqual(config.planner.minutes_per_stop, 3)
        self.assertEqual(config.planner.max_workers, 4)
        self.assertEqual(config.log.level, "DEBUG")

    def test_minimal_config_uses_defaults(self, _):
        """Test that omitted sections fall back to defaults."""
        self._write("data:\n  stops_path: stops.txt\n")
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(self.path)

        self.assertIsNone(config.data.gtfs_dir)
        self.assertEqual(config.data.storage_path, "buspulse_store.json")
        self.assertEqual(config.realtime.feed_urls, [])
        self.assertEqual(config.realtime.api_key, "")
        self.assertEqual(config.pulse.damping_factor, 3)
        self.assertEqual(config.log.level, "INFO")

    def test_missing_file(self, _):
        """Test that a missing config file is rejected."""
        with self.assertRaises(ConfigurationError):
            load_config(os.path.join(self._dir.name, "missing.yaml"))

    def test_invalid_yaml(self, _):
        """Test that malformed YAML is rejected."""
        self._write("data: [unclosed\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.path)

    def test_missing_data_section(self, _):
        """Test that the data section is required."""
        self._write("realtime:\n  feed_urls: []\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.path)

    def test_missing_stops_path(self, _):
        """Test that data.stops_path is required."""
        self._write("data:\n  gtfs_dir: gtfs\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.path)

    def test_feed_urls_must_be_a_list(self, _):
        """Test that feed_urls must be a list."""
        self._write("data:\n  stops_path: stops.txt\nrealtime:\n  feed_urls: https://example.com\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.path)

    def test_top_level_must_be_a_mapping(self, _):
        """Test that the document root must be a mapping."""
        self._write("- data\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.path)

    def test_configuration_error_is_a_value_error(self, _):
        """Test that configuration errors can be caught as ValueError."""
        self._write("")
        with self.assertRaises(ValueError):
            load_config(self.path)

    @patch("buspulse.config.logging.basicConfig")
    def test_setup_logging(self, mock_basic_config, _):
        """Test that the configured log level reaches logging.basicConfig."""
        self._write(FULL_CONFIG)
        setup_logging(load_config(self.path))
        mock_basic_config.assert_called_once()
        self.assertEqual(mock_basic_config.call_args.kwargs["level"], logging.DEBUG)


class TestStorage(unittest.TestCase):
    """Test key-value storage backends."""

    def test_in_memory_store(self):
        """Test getting, setting and listing keys in memory."""
        store = InMemoryKeyValueStore({"a": "1"})
        store.set("b", "2")

        self.assertEqual(store.get("a"), "1")
        self.assertIsNone(store.get("c"))
        self.assertEqual(sorted(store.keys()), ["a", "b"])

    def test_json_file_store_round_trip(self):
        """Test that values written to the JSON file store read back."""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "store.json")
            JsonFileKeyValueStore(path).set("key", '{"x": 1}')

            self.assertEqual(JsonFileKeyValueStore(path).get("key"), '{"x": 1}')
            self.assertFalse(os.path.exists(f"{path}.tmp"))

    def test_json_file_store_rejects_non_object(self):
        """Test that a JSON file holding a non-object is rejected."""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "store.json")
            with open(path, "w", encoding="utf-8") as f:
                f.write("[]")
            with self.assertRaises(ValueError):
                JsonFileKeyValueStore(path)


if __name__ == "__main__":
    unittest.main()
