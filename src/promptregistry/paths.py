from __future__ import annotations

import hashlib
from pathlib import Path

from .config import Config
from .errors import NoWorkspaceError, NoWorkspaceStorageError
from .models import parse_scope

SKILLS_SOURCE_TYPES = frozenset({"skills", "local-skills"})
EXTERNAL_SKILLS_SOURCE_TYPES = frozenset({"olaf", "local-olaf"})
EXTERNAL_SKILLS_ID_PREFIX = "olaf-"
EXTERNAL_SKILLS_DIR = Path(".olaf") / "external-skills"
DEFAULT_SOURCE_NAME = "default"

REPOSITORY_NATIVE_ROOT = ".github"


def is_skills_bundle(source_type: str | None) -> bool:
    return source_type in SKILLS_SOURCE_TYPES


def is_external_skills_bundle(bundle_id: str, source_type: str | None) -> bool:
    return source_type in EXTERNAL_SKILLS_SOURCE_TYPES or bundle_id.startswith(EXTERNAL_SKILLS_ID_PREFIX)


def workspace_key(workspace_root: Path) -> str:
    """Short stable key for a workspace, used to namespace its global cache."""
    return hashlib.sha256(str(workspace_root.expanduser().resolve()).encode("utf-8")).hexdigest()[:12]


class PathResolver:
    """Computes where bundles live on disk. Pure: never creates anything."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.global_storage = config.global_storage_path()
        self.workspace_storage = config.workspace_storage_path()
        self.workspace_root = config.workspace_path()

    def require_workspace(self) -> Path:
        if self.workspace_root is None:
            raise NoWorkspaceError("No workspace folder open. This operation requires an open workspace.")
        return self.workspace_root

    def storage_root(self, scope: str) -> Path:
        scope = parse_scope(scope)
        if scope == "user":
            return self.global_storage
        if scope == "workspace":
            if self.workspace_storage is None:
                raise NoWorkspaceStorageError("Workspace storage not available")
            return self.workspace_storage
        return self.global_storage / "repository" / workspace_key(self.require_workspace())

    def resolve_install_dir(
        self,
        bundle_id: str,
        scope: str,
        source_type: str | None = None,
        source_name: str | None = None,
    ) -> Path:
        if is_external_skills_bundle(bundle_id, source_type):
            workspace = self.require_workspace()
            return workspace / EXTERNAL_SKILLS_DIR / (source_name or DEFAULT_SOURCE_NAME)
        return self.storage_root(scope) / "bundles" / bundle_id

    def prompts_dir(self) -> Path:
        """Flat directory the host tool scans for user and workspace prompt files."""
        return self.config.host_user_path() / "prompts"

    def skills_root(self, scope: str = "user") -> Path:
        if parse_scope(scope) == "user":
            return self.config.skills_path()
        return self.require_workspace() / ".copilot" / "skills"

    def claude_skills_root(self, scope: str = "user") -> Path:
        if parse_scope(scope) == "user":
            return Path.home() / ".claude" / "skills"
        return self.require_workspace() / ".claude" / "skills"

    def repository_root(self) -> Path:
        return self.require_workspace() / REPOSITORY_NATIVE_ROOT

    def is_protected(self, path: Path) -> bool:
        """True for native integration roots shared with content we do not own."""
        if path.name == REPOSITORY_NATIVE_ROOT:
            return True
        candidate = path.expanduser().resolve()
        roots = [self.prompts_dir(), self.config.skills_path()]
        if self.workspace_root is not None:
            roots.append(self.workspace_root / REPOSITORY_NATIVE_ROOT)
            roots.append(self.workspace_root / ".copilot" / "skills")
            roots.append(self.workspace_root)
        return any(candidate == root.expanduser().resolve() for root in roots)
