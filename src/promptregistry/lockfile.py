from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from .errors import PromptRegistryError
from .logging import get_logger
from .manifest import read_manifest, synthesize_manifest
from .materialize import sha256_file, write_json_atomic
from .models import (
    BundleDescriptor,
    FileChecksum,
    InstalledBundleRecord,
    LockfileEntry,
    utc_now,
)
from .paths import PathResolver

logger = get_logger("lockfile")

LOCKFILE_NAME = "prompt-registry.lock.json"
SCHEMA_VERSION = 1


def checksum_files(paths: Iterable[Path], *, base: Path) -> tuple[FileChecksum, ...]:
    """sha256 of each file, keyed by its POSIX path relative to ``base``, sorted by path."""
    out = [FileChecksum(path=p.relative_to(base).as_posix(), checksum=sha256_file(p)) for p in paths]
    return tuple(sorted(out, key=lambda f: f.path))


def checksum_tree(root: Path) -> tuple[FileChecksum, ...]:
    return checksum_files((p for p in root.rglob("*") if p.is_file()), base=root)


class LockfileManager:
    """Reads and writes ``prompt-registry.lock.json`` for one workspace.

    ``create_or_update`` and ``remove`` are the only mutators. Both report failure
    by returning False so an install or uninstall is never undone by a lockfile
    problem.
    """

    def __init__(self, workspace_root: Path) -> None:
        self.workspace_root = workspace_root
        self.path = workspace_root / LOCKFILE_NAME

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"schema_version": SCHEMA_VERSION, "bundles": {}}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise PromptRegistryError(f"Lockfile {self.path} is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise PromptRegistryError(f"Lockfile {self.path} must contain a JSON object")
        bundles = raw.get("bundles")
        if not isinstance(bundles, dict):
            bundles = {}
        return {"schema_version": SCHEMA_VERSION, "bundles": bundles}

    def _save(self, bundles: dict[str, Any]) -> None:
        payload = {
            "schema_version": SCHEMA_VERSION,
            "generated_at": utc_now(),
            "bundles": {k: bundles[k] for k in sorted(bundles)},
        }
        write_json_atomic(self.path, payload)

    def entries(self) -> dict[str, LockfileEntry]:
        bundles = self._load()["bundles"]
        return {
            bundle_id: LockfileEntry.from_dict(bundle_id, raw)
            for bundle_id, raw in sorted(bundles.items())
            if isinstance(raw, dict)
        }

    def get(self, bundle_id: str) -> LockfileEntry | None:
        return self.entries().get(bundle_id)

    def create_or_update(self, entry: LockfileEntry) -> bool:
        try:
            bundles = self._load()["bundles"]
            bundles[entry.bundle_id] = entry.to_dict()
            self._save(bundles)
        except (PromptRegistryError, OSError) as e:
            logger.error("Failed to update lockfile for %s: %s", entry.bundle_id, e)
            return False
        logger.info("Lockfile updated for %s@%s (%d file(s))", entry.bundle_id, entry.version, len(entry.files))
        return True

    def remove(self, bundle_id: str) -> bool:
        """Drop ``bundle_id``. The file itself is deleted once no bundles remain."""
        try:
            bundles = self._load()["bundles"]
            if bundle_id not in bundles:
                return False
            del bundles[bundle_id]
            if bundles:
                self._save(bundles)
            else:
                self.path.unlink()
        except (PromptRegistryError, OSError) as e:
            logger.error("Failed to remove %s from lockfile: %s", bundle_id, e)
            return False
        logger.info("Removed %s from lockfile", bundle_id)
        return True

    def verify(self, bundle_id: str | None = None) -> dict[str, list[str]]:
        """Compare recorded checksums with the repository tree.

        Returns a mapping of bundle id to problems (``missing: <path>`` or
        ``modified: <path>``). Bundles with no problems map to an empty list.
        """
        report: dict[str, list[str]] = {}
        for bid, entry in self.entries().items():
            if bundle_id is not None and bid != bundle_id:
                continue
            problems: list[str] = []
            for f in entry.files:
                path = self.workspace_root / f.path
                if not path.is_file():
                    problems.append(f"missing: {f.path}")
                elif sha256_file(path) != f.checksum:
                    problems.append(f"modified: {f.path}")
            report[bid] = problems
        return report


class LockfileRegistry:
    """One :class:`LockfileManager` per workspace root, created on first use."""

    def __init__(self) -> None:
        self._managers: dict[Path, LockfileManager] = {}

    def for_workspace(self, workspace_root: Path) -> LockfileManager:
        key = workspace_root.expanduser().resolve()
        manager = self._managers.get(key)
        if manager is None:
            manager = LockfileManager(key)
            self._managers[key] = manager
        return manager


def records_from_lockfile(manager: LockfileManager, resolver: PathResolver) -> list[InstalledBundleRecord]:
    """Rebuild repository-scope install records from the lockfile alone."""
    records: list[InstalledBundleRecord] = []
    problems = manager.verify()
    for bundle_id, entry in manager.entries().items():
        install_dir = resolver.resolve_install_dir(bundle_id, "repository", entry.source_type)
        manifest = read_manifest(install_dir) if install_dir.is_dir() else None
        if manifest is None:
            manifest = synthesize_manifest(BundleDescriptor(id=bundle_id, version=entry.version, source_id=entry.source_id))
        records.append(
            InstalledBundleRecord(
                bundle_id=bundle_id,
                version=entry.version,
                installed_at=entry.installed_at,
                scope="repository",
                install_path=install_dir,
                manifest=manifest,
                source_id=entry.source_id,
                source_type=entry.source_type,
                commit_mode=entry.commit_mode,
                files_missing=not install_dir.is_dir() or any(p.startswith("missing:") for p in problems.get(bundle_id, [])),
            )
        )
    return records
