import io
import json
import os
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import patch

from promptregistry.cli import _merge_cfg, build_parser, main
from promptregistry.config import Config

MANIFEST = """\
id: acme-tools
version: 1.0.0
name: Acme Tools
prompts:
  - id: review
    name: Review
    file: prompts/review.prompt.md
"""


def _write_bundle(path: Path, files: dict[str, str]) -> None:
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)


class TestParser(unittest.TestCase):
    def test_aliases(self) -> None:
        p = build_parser()
        self.assertEqual(p.parse_args(["i", "acme", "a.zip"]).cmd, "i")
        self.assertEqual(p.parse_args(["rm", "acme"]).cmd, "rm")
        self.assertEqual(p.parse_args(["ls"]).cmd, "ls")

    def test_install_defaults(self) -> None:
        args = build_parser().parse_args(["install", "acme", "a.zip"])
        self.assertEqual(args.bundle_version, "latest")
        self.assertEqual(args.scope, "user")
        self.assertIsNone(args.commit_mode)
        self.assertFalse(args.yes)

    def test_runtime_flags_before_or_after_subcommand(self) -> None:
        p = build_parser()
        before = p.parse_args(["--workspace", "/ws", "list"])
        after = p.parse_args(["list", "--workspace", "/ws"])
        self.assertEqual(before.workspace, "/ws")
        self.assertEqual(after.workspace, "/ws")

    def test_cli_overrides_env_and_config(self) -> None:
        args = build_parser().parse_args(["list", "--global-storage", "/from-cli"])
        env = {"PROMPT_REGISTRY_GLOBAL_STORAGE": "/from-env", "PROMPT_REGISTRY_WORKSPACE": "/ws-env"}
        with patch.dict(os.environ, env):
            cfg = _merge_cfg(Config(global_storage_dir="/from-file"), args)
        self.assertEqual(cfg.global_storage_dir, "/from-cli")
        self.assertEqual(cfg.workspace_root, "/ws-env")

    def test_invalid_scope_choice(self) -> None:
        with patch("sys.stderr", new=io.StringIO()), self.assertRaises(SystemExit):
            build_parser().parse_args(["install", "acme", "a.zip", "--scope", "global"])


class TestCommands(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name).resolve()
        self.ws = self.root / "ws"
        self.ws.mkdir()
        self.cfg = Config(
            global_storage_dir=str(self.root / "global"),
            workspace_root=str(self.ws),
            host_user_dir=str(self.root / "host"),
            skills_dir=str(self.root / "skills"),
        )
        self.archive = self.root / "acme.zip"
        _write_bundle(
            self.archive,
            {"deployment-manifest.yml": MANIFEST, "prompts/review.prompt.md": "Review.\n"},
        )

    def tearDown(self) -> None:
        self._td.cleanup()

    def _run(self, argv: list[str]) -> tuple[int, str, str]:
        with (
            patch("promptregistry.cli.load_config", return_value=self.cfg),
            patch("promptregistry.cli.sys.stdin", new=io.StringIO()),
            patch("sys.stdout", new=io.StringIO()) as stdout,
            patch("sys.stderr", new=io.StringIO()) as stderr,
        ):
            rc = main(argv)
        return rc, stdout.getvalue(), stderr.getvalue()

    def test_install_list_uninstall(self) -> None:
        rc, out, _ = self._run(["install", "acme-tools", str(self.archive), "--json"])
        self.assertEqual(rc, 0)
        payload = json.loads(out)
        self.assertEqual(payload["bundle_id"], "acme-tools")
        self.assertEqual(payload["version"], "1.0.0")
        self.assertEqual(payload["warnings"], [])
        self.assertTrue((self.root / "host" / "prompts" / "review.prompt.md").exists())

        rc, out, _ = self._run(["list"])
        self.assertEqual(rc, 0)
        self.assertIn("acme-tools", out)
        self.assertIn("1.0.0", out)

        rc, out, _ = self._run(["status", "--json"])
        self.assertEqual(json.loads(out)["files"], ["review.prompt.md"])

        rc, out, _ = self._run(["rm", "acme-tools"])
        self.assertEqual(rc, 0)
        self.assertIn("uninstalled: acme-tools@1.0.0 (user)", out)

        rc, out, _ = self._run(["list"])
        self.assertIn("No bundles installed in user scope.", out)

    def test_status_counts_copied_prompts(self) -> None:
        with patch("promptregistry.materialize.os.symlink", side_effect=OSError("no symlinks here")):
            rc, _, _ = self._run(["install", "acme-tools", str(self.archive)])
        self.assertEqual(rc, 0)
        self.assertFalse((self.root / "host" / "prompts" / "review.prompt.md").is_symlink())

        rc, out, _ = self._run(["status", "--json"])
        self.assertEqual(rc, 0)
        status = json.loads(out)
        self.assertEqual(status["synced_files"], 1)
        self.assertEqual(status["files"], ["review.prompt.md"])

    def test_install_from_directory(self) -> None:
        src = self.root / "bundle-dir"
        (src / "prompts").mkdir(parents=True)
        (src / "deployment-manifest.yml").write_text(MANIFEST, encoding="utf-8")
        (src / "prompts" / "review.prompt.md").write_text("Review.\n", encoding="utf-8")

        rc, out, _ = self._run(["install", "acme-tools", str(src)])
        self.assertEqual(rc, 0)
        self.assertIn("installed: acme-tools@1.0.0 (user)", out)

    def test_version_mismatch_is_an_error(self) -> None:
        rc, out, err = self._run(["install", "acme-tools", str(self.archive), "--version", "2.0.0"])
        self.assertEqual(rc, 1)
        self.assertEqual(out, "")
        self.assertIn("error:", err)
        self.assertIn("2.0.0", err)

    def test_uninstall_unknown_bundle(self) -> None:
        rc, _, err = self._run(["uninstall", "nope"])
        self.assertEqual(rc, 1)
        self.assertIn("not installed", err)

    def test_declined_skill_overwrite_is_not_a_failure(self) -> None:
        skills = self.root / "skills" / "helper"
        skills.mkdir(parents=True)
        (skills / "SKILL.md").write_text("# Mine\n", encoding="utf-8")
        archive = self.root / "skill.zip"
        _write_bundle(archive, {"skills/helper/SKILL.md": "# Theirs\n"})

        rc, _, err = self._run(["install", "helper", str(archive), "--source-type", "skills"])
        self.assertEqual(rc, 0)
        self.assertIn("cancelled:", err)
        self.assertEqual((skills / "SKILL.md").read_text(encoding="utf-8"), "# Mine\n")

        rc, _, _ = self._run(["install", "helper", str(archive), "--source-type", "skills", "--yes"])
        self.assertEqual(rc, 0)
        self.assertEqual((skills / "SKILL.md").read_text(encoding="utf-8"), "# Theirs\n")

    def test_repository_lockfile_commands(self) -> None:
        rc, _, _ = self._run(["install", "acme-tools", str(self.archive), "--scope", "repository"])
        self.assertEqual(rc, 0)

        rc, out, _ = self._run(["lockfile", "show", "--json"])
        self.assertEqual(rc, 0)
        self.assertEqual(list(json.loads(out)), ["acme-tools"])

        rc, out, _ = self._run(["lockfile", "verify"])
        self.assertEqual(rc, 0)
        self.assertIn("acme-tools: ok", out)

        (self.ws / ".github" / "prompts" / "review.prompt.md").unlink()
        rc, out, _ = self._run(["lockfile", "verify", "--json"])
        self.assertEqual(rc, 1)
        self.assertEqual(
            json.loads(out),
            {"ok": False, "bundles": {"acme-tools": ["missing: .github/prompts/review.prompt.md"]}},
        )

    def test_skill_link_and_unlink(self) -> None:
        skill = self.root / "live-skill"
        skill.mkdir()
        (skill / "SKILL.md").write_text("# Live\n", encoding="utf-8")

        rc, out, _ = self._run(["skill", "link", str(skill)])
        self.assertEqual(rc, 0)
        self.assertTrue((self.root / "skills" / "live-skill").is_symlink())

        rc, out, _ = self._run(["skill", "unlink", "live-skill"])
        self.assertIn("removed: live-skill", out)
        self.assertTrue(skill.is_dir())


class TestConfigCommands(unittest.TestCase):
    def test_set_and_show(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            env = {"PROMPT_REGISTRY_CONFIG_PATH": str(path)}
            with patch.dict(os.environ, env), patch("sys.stdout", new=io.StringIO()) as stdout:
                rc = main(["config", "set", "--skills-dir", "/opt/skills", "--mirror-claude-skills", "true"])
                self.assertEqual(rc, 0)
                self.assertEqual(main(["config", "show"]), 0)

            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(raw["skills_dir"], "/opt/skills")
            self.assertTrue(raw["mirror_claude_skills"])
            self.assertIn(f"Saved: {path}", stdout.getvalue())


if __name__ == "__main__":
    unittest.main()
