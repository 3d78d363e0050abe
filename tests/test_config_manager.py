import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from cadence.config_manager import ConfigManager, env_overrides
from cadence.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "conf" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["storage"]["db_path"], "data/events.db")
            self.assertEqual(manager.load().api.default_range_days, 365)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "storage": {"db_path": "/srv/cadence/events.db"},
                    "api": {"default_range_days": 30},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse((Path(temp_dir) / "config.yaml.tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["storage"]["db_path"], "/srv/cadence/events.db")
            self.assertEqual(data["api"]["default_range_days"], 30)

    def test_overrides_merge_into_file_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.save(
                AppConfig.from_dict(
                    {"api": {"default_range_days": 14, "default_user_id": "alice"}, "logging": {"level": "debug"}}
                )
            )
            effective = manager.load_effective({"CADENCE_DEFAULT_RANGE_DAYS": "7"})
            self.assertEqual(effective.api.default_range_days, 7)
            self.assertEqual(effective.api.default_user_id, "alice")
            self.assertEqual(effective.logging.level, "DEBUG")
            self.assertEqual(effective.storage.db_path, "data/events.db")

    def test_environment_overrides(self) -> None:
        environ = {"CADENCE_DB_PATH": "/tmp/other.db", "CADENCE_DEFAULT_RANGE_DAYS": "7", "CADENCE_LOG_LEVEL": ""}
        self.assertEqual(
            env_overrides(environ),
            {"storage": {"db_path": "/tmp/other.db"}, "api": {"default_range_days": "7"}},
        )
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            effective = manager.load_effective(environ)
            self.assertEqual(effective.storage.db_path, "/tmp/other.db")
            self.assertEqual(effective.api.default_range_days, 7)
            self.assertEqual(manager.load().storage.db_path, "data/events.db")


if __name__ == "__main__":
    unittest.main()
