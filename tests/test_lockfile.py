import json
import tempfile
import unittest
from pathlib import Path

from promptregistry.config import Config
from promptregistry.lockfile import (
    LOCKFILE_NAME,
    LockfileManager,
    LockfileRegistry,
    checksum_files,
    records_from_lockfile,
)
from promptregistry.models import LockfileEntry, LockfileSource
from promptregistry.paths import PathResolver


class TestLockfileManager(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.ws = Path(self._td.name).resolve()
        prompts = self.ws / ".github" / "prompts"
        prompts.mkdir(parents=True)
        self.file_a = prompts / "a.prompt.md"
        self.file_b = prompts / "b.prompt.md"
        self.file_a.write_text("alpha\n", encoding="utf-8")
        self.file_b.write_text("beta\n", encoding="utf-8")
        self.manager = LockfileManager(self.ws)

    def tearDown(self) -> None:
        self._td.cleanup()

    def _entry(self, bundle_id: str, version: str = "1.0.0") -> LockfileEntry:
        return LockfileEntry(
            bundle_id=bundle_id,
            version=version,
            source_id="acme-source",
            source_type="github",
            commit_mode="commit",
            source=LockfileSource(type="github", url="https://example.com/b.zip"),
            files=checksum_files([self.file_b, self.file_a], base=self.ws),
            installed_at="2024-01-01T00:00:00Z",
        )

    def test_checksums_are_sorted_posix_paths(self) -> None:
        files = checksum_files([self.file_b, self.file_a], base=self.ws)
        self.assertEqual([f.path for f in files], [".github/prompts/a.prompt.md", ".github/prompts/b.prompt.md"])
        self.assertEqual(len(files[0].checksum), 64)

    def test_create_update_and_read(self) -> None:
        self.assertTrue(self.manager.create_or_update(self._entry("zeta")))
        self.assertTrue(self.manager.create_or_update(self._entry("alpha")))
        self.assertTrue(self.manager.create_or_update(self._entry("zeta", "2.0.0")))

        raw = json.loads((self.ws / LOCKFILE_NAME).read_text(encoding="utf-8"))
        self.assertEqual(raw["schema_version"], 1)
        self.assertIn("generated_at", raw)
        self.assertEqual(list(raw["bundles"]), ["alpha", "zeta"])
        self.assertEqual(raw["bundles"]["zeta"]["version"], "2.0.0")
        self.assertEqual(raw["bundles"]["zeta"]["source"], {"type": "github", "url": "https://example.com/b.zip"})

        entry = self.manager.get("zeta")
        self.assertIsNotNone(entry)
        self.assertEqual(entry.version, "2.0.0")
        self.assertEqual(len(entry.files), 2)
        self.assertIsNone(self.manager.get("missing"))

    def test_remove_deletes_empty_lockfile(self) -> None:
        self.manager.create_or_update(self._entry("one"))
        self.manager.create_or_update(self._entry("two"))

        self.assertTrue(self.manager.remove("one"))
        self.assertTrue(self.manager.path.exists())
        self.assertFalse(self.manager.remove("one"))

        self.assertTrue(self.manager.remove("two"))
        self.assertFalse(self.manager.path.exists())

    def test_verify_reports_drift(self) -> None:
        self.manager.create_or_update(self._entry("acme"))
        self.assertEqual(self.manager.verify(), {"acme": []})

        self.file_a.write_text("changed\n", encoding="utf-8")
        self.file_b.unlink()
        self.assertEqual(
            self.manager.verify("acme"),
            {"acme": ["modified: .github/prompts/a.prompt.md", "missing: .github/prompts/b.prompt.md"]},
        )

    def test_invalid_json_does_not_raise_from_mutators(self) -> None:
        self.manager.path.write_text("{broken", encoding="utf-8")
        with self.assertLogs("promptregistry.lockfile", level="ERROR"):
            self.assertFalse(self.manager.create_or_update(self._entry("acme")))
        self.assertEqual(self.manager.path.read_text(encoding="utf-8"), "{broken")

    def test_registry_reuses_managers(self) -> None:
        registry = LockfileRegistry()
        first = registry.for_workspace(self.ws)
        self.assertIs(first, registry.for_workspace(self.ws / "."))
        self.assertIsNot(first, registry.for_workspace(self.ws / ".github"))


class TestRecordsFromLockfile(unittest.TestCase):
    def test_rebuilds_records_without_cache(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td).resolve()
            ws = root / "ws"
            ws.mkdir()
            resolver = PathResolver(Config(global_storage_dir=str(root / "global"), workspace_root=str(ws)))
            manager = LockfileManager(ws)
            manager.create_or_update(
                LockfileEntry(
                    bundle_id="acme-tools",
                    version="1.2.0",
                    source_id="acme-source",
                    source_type="github",
                    commit_mode="local-only",
                    source=LockfileSource(type="github"),
                    installed_at="2024-01-01T00:00:00Z",
                )
            )

            records = records_from_lockfile(manager, resolver)

            self.assertEqual(len(records), 1)
            record = records[0]
            self.assertEqual(record.bundle_id, "acme-tools")
            self.assertEqual(record.version, "1.2.0")
            self.assertEqual(record.scope, "repository")
            self.assertEqual(record.commit_mode, "local-only")
            self.assertTrue(record.files_missing)
            self.assertTrue(record.manifest.synthesized)
            self.assertEqual(record.install_path, resolver.resolve_install_dir("acme-tools", "repository"))


if __name__ == "__main__":
    unittest.main()
