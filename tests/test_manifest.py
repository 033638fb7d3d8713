import io
import tempfile
import unittest
import zipfile
from pathlib import Path

from promptregistry.archive import cleanup_temp_dir, extract_bundle, local_bundle_dir, safe_extract_zip
from promptregistry.errors import (
    BundleIdMismatchError,
    BundleVersionMismatchError,
    ExtractionError,
    InvalidManifestError,
)
from promptregistry.manifest import (
    MANIFEST_FILENAME,
    generate_bundle_id,
    is_manifest_id_match,
    read_manifest,
    validate_bundle,
)
from promptregistry.models import BundleDescriptor


def _zip(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


MANIFEST = """\
id: acme-tools
version: 1.0.0
name: Acme Tools
description: Handy prompts
tags: [acme]
prompts:
  - id: review
    name: Review
    file: prompts/review.prompt.md
    type: prompt
  - id: helper
    name: Helper
    file: skills/helper/SKILL.md
    type: skill
mcpServers:
  db:
    command: node
    args: ["${bundlePath}/server.js"]
"""


class TestIdMatching(unittest.TestCase):
    def test_exact_and_suffix_forms(self) -> None:
        self.assertTrue(is_manifest_id_match("test2", "1.0.2", "owner-repo-test2-v1.0.2"))
        self.assertTrue(is_manifest_id_match("test2", "1.0.2", "owner-repo-test2-1.0.2"))
        self.assertTrue(is_manifest_id_match("owner-repo-collection-v1.0.0", "1.0.0", "owner-repo-collection-v1.0.0"))
        self.assertTrue(
            is_manifest_id_match("test2", "1.0.2", "acme-platform-team.prompt-pack-agents-test2-1.0.2")
        )

    def test_unrelated_ids_do_not_match(self) -> None:
        self.assertFalse(is_manifest_id_match("completely-different", "1.0.0", "owner-repo-test2-v1.0.0"))
        self.assertFalse(is_manifest_id_match("test2", "1.0.3", "owner-repo-test2-v1.0.2"))

    def test_generate_bundle_id(self) -> None:
        self.assertEqual(generate_bundle_id("owner/repo", "my-collection", "1.0.0"), "owner-repo-my-collection-v1.0.0")
        bundle_id = generate_bundle_id("owner/repo", "test2", "1.0.2")
        self.assertTrue(is_manifest_id_match("test2", "1.0.2", bundle_id))


class TestValidateBundle(unittest.TestCase):
    def _write(self, root: Path, manifest: str | None) -> None:
        if manifest is not None:
            (root / MANIFEST_FILENAME).write_text(manifest, encoding="utf-8")

    def test_parses_items_and_servers(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            self._write(root, MANIFEST)
            manifest = validate_bundle(root, BundleDescriptor(id="acme-tools", version="1.0.0"))

        self.assertEqual(manifest.id, "acme-tools")
        self.assertEqual([p.id for p in manifest.prompts], ["review", "helper"])
        self.assertEqual(manifest.prompts[1].skill_name, "helper")
        self.assertIsNone(manifest.prompts[0].skill_name)
        self.assertIn("db", manifest.mcp_servers)
        self.assertFalse(manifest.synthesized)

    def test_yaml_dates_in_servers_become_strings(self) -> None:
        extra = "    env:\n      SINCE: 2024-01-01\n      RETRIES: 3\n"
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            self._write(root, MANIFEST + extra)
            manifest = validate_bundle(root, BundleDescriptor(id="acme-tools", version="1.0.0"))
        self.assertEqual(manifest.mcp_servers["db"]["env"], {"SINCE": "2024-01-01", "RETRIES": 3})

    def test_version_mismatch(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            self._write(root, MANIFEST.replace("version: 1.0.0", "version: 2.0.0"))
            with self.assertRaises(BundleVersionMismatchError) as ctx:
                validate_bundle(root, BundleDescriptor(id="acme-tools", version="1.0.0"))
        self.assertEqual(ctx.exception.expected, "1.0.0")
        self.assertEqual(ctx.exception.actual, "2.0.0")

    def test_latest_skips_version_check(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            self._write(root, MANIFEST.replace("version: 1.0.0", "version: 2.0.0"))
            manifest = validate_bundle(root, BundleDescriptor(id="acme-tools", version="latest"))
        self.assertEqual(manifest.version, "2.0.0")

    def test_id_mismatch(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            self._write(root, MANIFEST)
            with self.assertRaises(BundleIdMismatchError):
                validate_bundle(root, BundleDescriptor(id="other-bundle", version="1.0.0"))

    def test_composite_descriptor_id_is_accepted(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            self._write(root, MANIFEST)
            manifest = validate_bundle(root, BundleDescriptor(id="acme-prompts-acme-tools-v1.0.0", version="1.0.0"))
        self.assertEqual(manifest.id, "acme-tools")

    def test_missing_required_field(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            self._write(root, "id: acme-tools\nversion: 1.0.0\n")
            with self.assertRaises(InvalidManifestError) as ctx:
                validate_bundle(root, BundleDescriptor(id="acme-tools", version="1.0.0"))
        self.assertIn("name", str(ctx.exception))

    def test_invalid_yaml(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            self._write(root, "id: [unclosed\n")
            with self.assertRaises(InvalidManifestError):
                validate_bundle(root, BundleDescriptor(id="acme-tools", version="1.0.0"))

    def test_synthesizes_manifest_when_absent(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            desc = BundleDescriptor(id="local-bundle", version="0.1.0", description="From disk")
            manifest = validate_bundle(root, desc)
            self.assertIsNone(read_manifest(root))

        self.assertTrue(manifest.synthesized)
        self.assertEqual(manifest.id, "local-bundle")
        self.assertEqual(manifest.prompts, ())
        self.assertEqual(manifest.common.directories, ())
        self.assertEqual(manifest.common.include_patterns, ("**/*",))
        self.assertEqual(manifest.bundle_settings.compression, "none")
        self.assertEqual(manifest.bundle_settings.naming, {"environment_bundle": "local-bundle"})
        self.assertEqual(manifest.metadata.manifest_version, "1.0")
        self.assertEqual(manifest.metadata.description, "From disk")


class TestArchive(unittest.TestCase):
    def test_extract_into_unique_temp_dirs(self) -> None:
        data = _zip({MANIFEST_FILENAME: MANIFEST, "prompts/review.prompt.md": "Review\n"})
        with tempfile.TemporaryDirectory() as td:
            a = extract_bundle(data, temp_root=Path(td))
            b = extract_bundle(data, temp_root=Path(td))
            self.assertNotEqual(a, b)
            self.assertTrue(a.name.startswith("bundle-"))
            self.assertEqual((a / "prompts" / "review.prompt.md").read_text(encoding="utf-8"), "Review\n")
            self.assertTrue(cleanup_temp_dir(a))
            self.assertFalse(a.exists())

    def test_corrupt_archive_raises_and_leaves_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ExtractionError):
                extract_bundle(b"definitely not a zip", temp_root=Path(td))
            self.assertEqual(list(Path(td).iterdir()), [])

    def test_rejects_path_traversal(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ExtractionError):
                safe_extract_zip(_zip({"../evil.txt": "x"}), Path(td) / "out")
            self.assertFalse((Path(td) / "evil.txt").exists())

    def test_local_bundle_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(local_bundle_dir(Path(td).as_uri()), Path(td))
            self.assertIsNone(local_bundle_dir("https://example.com/bundle.zip"))
            with self.assertRaises(ExtractionError):
                local_bundle_dir((Path(td) / "missing").as_uri())


if __name__ == "__main__":
    unittest.main()
