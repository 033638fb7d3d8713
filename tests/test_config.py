import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from promptregistry.config import Config, apply_env, config_path, load_config, save_config


class TestConfig(unittest.TestCase):
    def test_missing_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(Path(td) / "nope.json")
        self.assertEqual(cfg, Config())
        self.assertEqual(cfg.timeout_s, 30.0)
        self.assertFalse(cfg.mirror_claude_skills)

    def test_save_and_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "nested" / "config.json"
            cfg = Config(global_storage_dir="/data/prompt-registry", skills_dir="/opt/skills", timeout_s=5.0)
            self.assertEqual(save_config(cfg, path), path)
            self.assertFalse(path.with_suffix(".json.tmp").exists())
            self.assertEqual(load_config(path), cfg)

    def test_unknown_keys_are_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text(json.dumps({"workspace_root": "/ws", "token": "old"}), encoding="utf-8")
            self.assertEqual(load_config(path), Config(workspace_root="/ws"))

    def test_config_path_env(self) -> None:
        with patch.dict(os.environ, {"PROMPT_REGISTRY_CONFIG_PATH": "/etc/prompt-registry.json"}):
            self.assertEqual(config_path(), Path("/etc/prompt-registry.json"))
        self.assertEqual(config_path("/tmp/x.json"), Path("/tmp/x.json"))

    def test_apply_env(self) -> None:
        cfg = apply_env(
            Config(workspace_root="/from-file"),
            {"PROMPT_REGISTRY_WORKSPACE": "/from-env", "PROMPT_REGISTRY_TIMEOUT_S": "12.5", "PROMPT_REGISTRY_SKILLS_DIR": ""},
        )
        self.assertEqual(cfg.workspace_root, "/from-env")
        self.assertEqual(cfg.timeout_s, 12.5)
        self.assertIsNone(cfg.skills_dir)

    def test_path_helpers(self) -> None:
        cfg = Config(host_user_dir="/host", workspace_root="/ws")
        self.assertEqual(cfg.host_user_path(), Path("/host"))
        self.assertEqual(cfg.workspace_path(), Path("/ws"))
        self.assertIsNone(cfg.workspace_storage_path())
        self.assertEqual(Config().skills_path(), Path.home() / ".copilot" / "skills")


if __name__ == "__main__":
    unittest.main()
