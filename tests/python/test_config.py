import logging
import tempfile
import unittest
from pathlib import Path

from pumpkin_runner.config import (
    CONFIG_FILENAME,
    DEFAULT_LOCK_TTL_SECS,
    DEFAULT_SOURCE,
    load_config,
    parse_log_level,
    write_default_config,
)
from pumpkin_runner.errors import ConfigError


class RunnerConfigTest(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.addCleanup(self._tmp.cleanup)

    def write(self, text: str) -> None:
        (self.root / CONFIG_FILENAME).write_text(text, encoding="utf-8")

    def test_defaults_without_file(self):
        cfg = load_config(self.root, env={})
        self.assertIsNone(cfg.path)
        self.assertIsNone(cfg.source)
        self.assertEqual(cfg.run_dir, ".run")
        self.assertEqual(cfg.lock_ttl_secs, DEFAULT_LOCK_TTL_SECS)
        self.assertEqual(cfg.server_args, [])

    def test_default_file_round_trips(self):
        written = write_default_config(self.root)
        self.assertEqual(written, self.root / CONFIG_FILENAME)
        self.assertIsNone(write_default_config(self.root))

        cfg = load_config(self.root, env={})
        self.assertEqual(cfg.source, DEFAULT_SOURCE)
        self.assertEqual(cfg.ref, "master")
        self.assertIsNone(cfg.profile)
        self.assertIsNone(cfg.prebuilt)

    def test_file_values(self):
        self.write(
            "runtime:\n"
            "  ref: v0.9\n"
            "  profile: release\n"
            "  prebuilt: bin/pumpkin\n"
            "  args: [--nogui, 25565]\n"
            "run_dir: .server\n"
            "log_level: warning\n"
        )
        cfg = load_config(self.root, env={})
        self.assertEqual(cfg.ref, "v0.9")
        self.assertEqual(cfg.profile, "release")
        self.assertEqual(cfg.prebuilt, self.root / "bin" / "pumpkin")
        self.assertEqual(cfg.server_args, ["--nogui", "25565"])
        self.assertEqual(cfg.run_dir, ".server")
        self.assertEqual(parse_log_level(cfg.log_level), logging.WARNING)

    def test_env_overrides(self):
        self.write("log_level: ERROR\n")
        cfg = load_config(
            self.root,
            env={"PUMPKIN_RUNNER_LOG_LEVEL": "DEBUG", "PUMPKIN_RUNNER_LOCK_TTL_SECS": "60"},
        )
        self.assertEqual(cfg.log_level, "DEBUG")
        self.assertEqual(cfg.lock_ttl_secs, 60)

    def test_invalid_yaml(self):
        self.write("runtime: [unclosed\n")
        with self.assertRaises(ConfigError):
            load_config(self.root, env={})

    def test_non_mapping_top_level(self):
        self.write("- just\n- a list\n")
        with self.assertRaises(ConfigError):
            load_config(self.root, env={})

    def test_bad_profile_and_args(self):
        self.write("runtime:\n  profile: turbo\n")
        with self.assertRaises(ConfigError):
            load_config(self.root, env={})
        self.write("runtime:\n  args: --nogui\n")
        with self.assertRaises(ConfigError):
            load_config(self.root, env={})

    def test_bad_ttl(self):
        with self.assertRaises(ConfigError):
            load_config(self.root, env={"PUMPKIN_RUNNER_LOCK_TTL_SECS": "soon"})

    def test_parse_log_level(self):
        self.assertEqual(parse_log_level("info"), logging.INFO)
        with self.assertRaises(ConfigError):
            parse_log_level("chatty")


if __name__ == "__main__":
    unittest.main()
