from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Iterable

from .errors import InvalidManifestError
from .gitexclude import add_entries, remove_entries
from .logging import get_logger
from .manifest import read_manifest
from .materialize import (
    check_path_exists,
    link_or_copy_dir,
    link_or_copy_file,
    remove_empty_dir,
    remove_tree,
    same_content,
    same_tree,
    sha256_file,
)
from .models import DeploymentManifest, FileChecksum, PromptItem, parse_scope
from .paths import PathResolver

logger = get_logger("sync")

REPOSITORY_TYPE_DIRS = {
    "prompt": "prompts",
    "instructions": "instructions",
    "chatmode": "chatmodes",
    "agent": "agents",
    "skill": "skills",
}


def _between(top: Path, path: Path) -> list[Path]:
    """Ancestors of ``path`` strictly below ``top``, outermost first."""
    out = [p for p in path.parents if p != top and p.is_relative_to(top)]
    return list(reversed(out))


def detect_item_type(item: PromptItem) -> str:
    """Declared ``type`` wins; otherwise guess from tags and the file name."""
    if item.type:
        return item.type
    stem = Path(item.file).stem
    tags = set(item.tags)
    if "instructions" in tags or "instructions" in stem:
        return "instructions"
    if "chatmode" in tags or "mode" in tags:
        return "chatmode"
    if "agent" in tags:
        return "agent"
    return "prompt"


@dataclass(frozen=True)
class SyncTarget:
    item_id: str
    type: str
    source: Path
    target: Path

    @property
    def is_skill(self) -> bool:
        return self.type == "skill"


class ScopeSynchronizer:
    """Projects a bundle's manifest items into a scope's native discovery tree.

    Subclasses decide where each item lands. Only entries this class created
    are ever removed: symlinks, or plain copies whose content still matches the
    bundle's source.
    """

    scope = ""

    def __init__(self, resolver: PathResolver, *, mirror_claude: bool = False) -> None:
        self.resolver = resolver
        self.mirror_claude = mirror_claude
        self.warnings: list[str] = []

    def file_target(self, item_id: str, item_type: str) -> Path:
        raise NotImplementedError

    def skill_target(self, skill_name: str) -> Path:
        raise NotImplementedError

    def extra_skill_targets(self, skill_name: str) -> list[Path]:
        return []

    def install_dir_for(self, bundle_id: str) -> Path:
        return self.resolver.resolve_install_dir(bundle_id, self.scope)

    def targets(self, install_dir: Path, manifest: DeploymentManifest | None = None) -> list[SyncTarget]:
        if manifest is None:
            manifest = read_manifest(install_dir)
        if manifest is None:
            return []
        out: list[SyncTarget] = []
        for item in manifest.prompts:
            item_type = detect_item_type(item)
            if item_type == "skill":
                name = item.skill_name
                if name is None:
                    logger.warning("Invalid skill path: %s", item.file)
                    continue
                out.append(SyncTarget(name, "skill", install_dir / "skills" / name, self.skill_target(name)))
                continue
            out.append(SyncTarget(item.id, item_type, install_dir / item.file, self.file_target(item.id, item_type)))
        return out

    def sync_bundle(
        self,
        bundle_id: str,
        install_dir: Path,
        manifest: DeploymentManifest | None = None,
    ) -> list[Path]:
        """Sync every item and return the native paths that now hold bundle content.

        An item that cannot be written is logged and recorded in ``warnings``;
        the remaining items are still synced.
        """
        self.warnings = []
        synced: list[Path] = []
        for t in self.targets(install_dir, manifest):
            if not t.source.exists():
                logger.warning("%s source not found for %s: %s", t.type, bundle_id, t.source)
                continue
            if t.is_skill:
                for target in [t.target, *self.extra_skill_targets(t.item_id)]:
                    if self._try_sync(self._sync_dir, t.source, target):
                        synced.append(target)
            elif self._try_sync(self._sync_file, t.source, t.target):
                synced.append(t.target)
        logger.info("Synced %d item(s) for %s into %s scope", len(synced), bundle_id, self.scope)
        return synced

    def _try_sync(self, sync_one, source: Path, target: Path) -> bool:
        try:
            return sync_one(source, target)
        except OSError as e:
            logger.warning("Failed to sync %s: %s", target, e)
            self.warnings.append(f"Failed to sync {target}: {e}")
            return False

    def unsync_bundle(self, bundle_id: str, install_dir: Path | None = None) -> list[Path]:
        """Remove the entries ``sync_bundle`` created. Safe to call repeatedly."""
        if install_dir is None:
            install_dir = self.install_dir_for(bundle_id)
        try:
            targets = self.targets(install_dir)
        except InvalidManifestError as e:
            logger.warning("Cannot unsync %s: %s", bundle_id, e)
            return []
        if not targets:
            logger.debug("Nothing to unsync for %s", bundle_id)
        removed: list[Path] = []
        for t in targets:
            if t.is_skill:
                for target in [t.target, *self.extra_skill_targets(t.item_id)]:
                    if self._unsync_dir(t.source, target):
                        removed.append(target)
            elif self._unsync_file(t.source, t.target):
                removed.append(t.target)
        logger.info("Removed %d synced item(s) for %s", len(removed), bundle_id)
        self._after_unsync(targets)
        return removed

    def _after_unsync(self, targets: list[SyncTarget]) -> None:
        pass

    def _owned_link(self, target: Path, source: Path) -> bool:
        try:
            dest = Path(os.readlink(target))
        except OSError:
            return False
        if not dest.is_absolute():
            dest = target.parent / dest
        dest = Path(os.path.abspath(dest))
        if not dest.exists():
            return True
        if dest == source.resolve():
            return True
        storage = [self.resolver.global_storage, self.resolver.workspace_storage]
        return any(root is not None and dest.is_relative_to(root.resolve()) for root in storage)

    def _sync_file(self, source: Path, target: Path) -> bool:
        state = check_path_exists(target)
        if state.exists:
            if state.is_symbolic_link and self._owned_link(target, source):
                os.unlink(target)
            elif not state.is_symbolic_link and target.is_file() and same_content(target, source):
                os.unlink(target)
            else:
                logger.warning("File already exists (not managed): %s", target)
                return False
        mode = link_or_copy_file(source, target)
        logger.debug("Synced %s (%s)", target.name, mode)
        return True

    def _unsync_file(self, source: Path, target: Path) -> bool:
        state = check_path_exists(target)
        if not state.exists:
            return False
        if state.is_symbolic_link:
            os.unlink(target)
            return True
        if not source.is_file():
            logger.warning("Skipping non-symlink file (source not found): %s", target)
            return False
        if not same_content(target, source):
            logger.warning("Skipping modified file: %s", target)
            return False
        os.unlink(target)
        return True

    def _sync_dir(self, source: Path, target: Path) -> bool:
        state = check_path_exists(target)
        if state.exists:
            if state.is_symbolic_link and self._owned_link(target, source):
                os.unlink(target)
            elif not state.is_symbolic_link and target.is_dir() and same_tree(target, source):
                remove_tree(target)
            else:
                logger.warning("Skill directory already exists (not managed): %s", target)
                return False
        mode = link_or_copy_dir(source, target)
        logger.debug("Synced skill %s (%s)", target.name, mode)
        return True

    def _unsync_dir(self, source: Path, target: Path) -> bool:
        state = check_path_exists(target)
        if not state.exists:
            return False
        if state.is_symbolic_link:
            os.unlink(target)
            return True
        if not source.is_dir() or not same_tree(target, source):
            logger.warning("Skipping modified skill directory: %s", target)
            return False
        remove_tree(target)
        return True

    def status(self, install_dirs: Iterable[Path] = ()) -> dict[str, Any]:
        raise NotImplementedError


class _FlatPromptsSync(ScopeSynchronizer):
    def file_target(self, item_id: str, item_type: str) -> Path:
        return self.resolver.prompts_dir() / f"{item_id}.{item_type}.md"

    def skill_target(self, skill_name: str) -> Path:
        return self.resolver.skills_root(self.scope) / skill_name

    def extra_skill_targets(self, skill_name: str) -> list[Path]:
        if not self.mirror_claude:
            return []
        return [self.resolver.claude_skills_root(self.scope) / skill_name]

    def status(self, install_dirs: Iterable[Path] = ()) -> dict[str, Any]:
        """Symlinked prompt files, plus plain copies that match an installed bundle's source."""
        prompts_dir = self.resolver.prompts_dir()
        copies = self._managed_copies(install_dirs)
        files: list[str] = []
        if prompts_dir.is_dir():
            for entry in sorted(prompts_dir.iterdir()):
                if entry.is_symlink():
                    files.append(entry.name)
                elif entry.is_file() and entry in copies and same_content(entry, copies[entry]):
                    files.append(entry.name)
        skills_root = self.resolver.skills_root(self.scope)
        skills: list[str] = []
        if skills_root.is_dir():
            for entry in sorted(skills_root.iterdir()):
                if entry.is_dir() and (entry / "SKILL.md").is_file():
                    skills.append(entry.name)
        return {
            "scope": self.scope,
            "prompts_dir": str(prompts_dir),
            "dir_exists": prompts_dir.is_dir(),
            "synced_files": len(files),
            "files": files,
            "skills_dir": str(skills_root),
            "skills": skills,
        }

    def _managed_copies(self, install_dirs: Iterable[Path]) -> dict[Path, Path]:
        out: dict[Path, Path] = {}
        for install_dir in install_dirs:
            try:
                targets = self.targets(install_dir)
            except InvalidManifestError as e:
                logger.debug("Ignoring %s in status: %s", install_dir, e)
                continue
            for t in targets:
                if not t.is_skill and t.source.is_file():
                    out[t.target] = t.source
        return out


class UserScopeSync(_FlatPromptsSync):
    scope = "user"


class WorkspaceScopeSync(_FlatPromptsSync):
    scope = "workspace"


class RepositoryScopeSync(ScopeSynchronizer):
    """Writes into ``.github/<type>/`` under the workspace root."""

    scope = "repository"

    def __init__(self, resolver: PathResolver, *, commit_mode: str | None = None) -> None:
        super().__init__(resolver)
        self.commit_mode = commit_mode or "commit"

    def file_target(self, item_id: str, item_type: str) -> Path:
        folder = REPOSITORY_TYPE_DIRS.get(item_type, "prompts")
        return self.resolver.repository_root() / folder / f"{item_id}.{item_type}.md"

    def skill_target(self, skill_name: str) -> Path:
        return self.resolver.repository_root() / "skills" / skill_name

    def relative(self, path: Path) -> str:
        return path.relative_to(self.resolver.require_workspace()).as_posix()

    def sync_bundle(
        self,
        bundle_id: str,
        install_dir: Path,
        manifest: DeploymentManifest | None = None,
    ) -> list[Path]:
        synced = super().sync_bundle(bundle_id, install_dir, manifest)
        if self.commit_mode == "local-only" and synced:
            add_entries(self.resolver.require_workspace(), [self.relative(p) for p in synced])
        return synced

    def _after_unsync(self, targets: list[SyncTarget]) -> None:
        if targets:
            remove_entries(self.resolver.require_workspace(), [self.relative(t.target) for t in targets])

    def unsync_recorded(self, files: Iterable[FileChecksum]) -> list[Path]:
        """Remove the repository files a lockfile entry lists, without the bundle cache.

        A symlink (the file itself or a linked skill directory above it) is
        unlinked. A plain file is removed only while its sha256 still matches the
        recorded checksum. Directories emptied this way are pruned down to
        ``.github/<type>/``.
        """
        workspace = self.resolver.require_workspace()
        root = self.resolver.repository_root()
        removed: list[Path] = []
        entries: set[str] = set()
        for f in files:
            parts = PurePosixPath(f.path).parts
            if len(parts) < 3 or parts[0] != root.name or ".." in parts:
                continue
            entries.add("/".join(parts[:3]))
            path = workspace.joinpath(*parts)
            folder = workspace.joinpath(*parts[:2])
            link = next((p for p in _between(folder, path) if p.is_symlink()), None)
            if link is not None:
                os.unlink(link)
                removed.append(link)
                continue
            state = check_path_exists(path)
            if not state.exists:
                continue
            if not state.is_symbolic_link:
                if not path.is_file() or sha256_file(path) != f.checksum:
                    logger.warning("Skipping modified file: %s", path)
                    continue
            os.unlink(path)
            removed.append(path)
            parent = path.parent
            while parent != folder and parent.is_relative_to(folder) and remove_empty_dir(parent):
                parent = parent.parent
        gone = sorted(e for e in entries if not os.path.lexists(workspace / e))
        if gone:
            remove_entries(workspace, gone)
        logger.info("Removed %d recorded file(s) from %s", len(removed), root)
        return removed

    def synced_files(self, install_dir: Path, manifest: DeploymentManifest | None = None) -> list[Path]:
        """Files actually present in the repository tree for this bundle."""
        out: list[Path] = []
        for t in self.targets(install_dir, manifest):
            if t.is_skill:
                if t.target.is_dir():
                    out.extend(p for p in t.target.rglob("*") if p.is_file())
            elif t.target.is_file():
                out.append(t.target)
        return sorted(out)

    def status(self, install_dirs: Iterable[Path] = ()) -> dict[str, Any]:
        root = self.resolver.repository_root()
        entries: dict[str, list[str]] = {}
        for item_type, folder in REPOSITORY_TYPE_DIRS.items():
            d = root / folder
            if not d.is_dir():
                continue
            if item_type == "skill":
                names = [e.name for e in sorted(d.iterdir()) if (e / "SKILL.md").is_file()]
            else:
                names = [e.name for e in sorted(d.iterdir()) if e.name.endswith(f".{item_type}.md")]
            if names:
                entries[folder] = names
        return {
            "scope": self.scope,
            "root": str(root),
            "dir_exists": root.is_dir(),
            "synced_files": sum(len(v) for v in entries.values()),
            "entries": entries,
        }


def create_synchronizer(
    scope: str,
    resolver: PathResolver,
    *,
    commit_mode: str | None = None,
    mirror_claude: bool = False,
) -> ScopeSynchronizer:
    scope = parse_scope(scope)
    if scope == "user":
        return UserScopeSync(resolver, mirror_claude=mirror_claude)
    if scope == "workspace":
        return WorkspaceScopeSync(resolver, mirror_claude=mirror_claude)
    return RepositoryScopeSync(resolver, commit_mode=commit_mode)
