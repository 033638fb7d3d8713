from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Literal

from .errors import PromptRegistryError

Scope = Literal["user", "workspace", "repository"]
CommitMode = Literal["commit", "local-only"]

SCOPES: tuple[str, ...] = ("user", "workspace", "repository")
COMMIT_MODES: tuple[str, ...] = ("commit", "local-only")
ITEM_TYPES: tuple[str, ...] = ("prompt", "instructions", "chatmode", "agent", "skill")

_SKILL_FILE_RE = re.compile(r"skills/([^/]+)/SKILL\.md")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_scope(value: str) -> str:
    raw = (value or "").strip().lower()
    if raw not in SCOPES:
        raise PromptRegistryError(f"Invalid scope {value!r}. Expected one of: {', '.join(SCOPES)}.")
    return raw


def parse_commit_mode(value: str | None) -> str | None:
    if value is None:
        return None
    raw = value.strip().lower()
    if raw not in COMMIT_MODES:
        raise PromptRegistryError(f"Invalid commit mode {value!r}. Expected one of: {', '.join(COMMIT_MODES)}.")
    return raw


def _str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(v) for v in value if isinstance(v, (str, int, float)))


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _json_safe(value: Any) -> Any:
    """YAML scalars such as dates become strings so manifest data can be written back as JSON."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class BundleDescriptor:
    """Identity of a bundle as produced by the acquisition layer."""

    id: str
    version: str
    name: str = ""
    description: str = ""
    source_id: str | None = None
    download_url: str | None = None
    manifest_url: str | None = None


@dataclass(frozen=True)
class PromptItem:
    id: str
    file: str
    name: str = ""
    description: str = ""
    type: str | None = None
    tags: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Any) -> PromptItem | None:
        if not isinstance(raw, dict):
            return None
        item_id = _opt_str(raw.get("id"))
        file = _opt_str(raw.get("file"))
        if item_id is None or file is None:
            return None
        return cls(
            id=item_id,
            file=file.replace("\\", "/"),
            name=str(raw.get("name") or item_id),
            description=str(raw.get("description") or ""),
            type=_opt_str(raw.get("type")),
            tags=_str_tuple(raw.get("tags")),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "name": self.name, "file": self.file}
        if self.description:
            out["description"] = self.description
        if self.type:
            out["type"] = self.type
        if self.tags:
            out["tags"] = list(self.tags)
        return out

    @property
    def skill_name(self) -> str | None:
        """Directory name for ``skills/<name>/SKILL.md`` entries, else None."""
        m = _SKILL_FILE_RE.search(self.file)
        return m.group(1) if m else None


@dataclass(frozen=True)
class CommonSection:
    directories: tuple[str, ...] = ()
    files: tuple[str, ...] = ()
    include_patterns: tuple[str, ...] = ("**/*",)
    exclude_patterns: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Any) -> CommonSection:
        if not isinstance(raw, dict):
            return cls()
        include = _str_tuple(raw.get("include_patterns")) if "include_patterns" in raw else ("**/*",)
        return cls(
            directories=_str_tuple(raw.get("directories")),
            files=_str_tuple(raw.get("files")),
            include_patterns=include,
            exclude_patterns=_str_tuple(raw.get("exclude_patterns")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "directories": list(self.directories),
            "files": list(self.files),
            "include_patterns": list(self.include_patterns),
            "exclude_patterns": list(self.exclude_patterns),
        }


@dataclass(frozen=True)
class BundleSettings:
    include_common_in_environment_bundles: bool = True
    create_common_bundle: bool = True
    compression: str = "none"
    naming: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> BundleSettings:
        if not isinstance(raw, dict):
            return cls()
        naming = raw.get("naming")
        return cls(
            include_common_in_environment_bundles=bool(raw.get("include_common_in_environment_bundles", True)),
            create_common_bundle=bool(raw.get("create_common_bundle", True)),
            compression=str(raw.get("compression") or "none"),
            naming={str(k): str(v) for k, v in naming.items()} if isinstance(naming, dict) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "include_common_in_environment_bundles": self.include_common_in_environment_bundles,
            "create_common_bundle": self.create_common_bundle,
            "compression": self.compression,
            "naming": dict(self.naming),
        }


@dataclass(frozen=True)
class ManifestMetadata:
    manifest_version: str = "1.0"
    description: str = ""
    author: str | None = None
    last_updated: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> ManifestMetadata:
        if not isinstance(raw, dict):
            return cls()
        return cls(
            manifest_version=str(raw.get("manifest_version") or "1.0"),
            description=str(raw.get("description") or ""),
            author=_opt_str(raw.get("author")),
            last_updated=_opt_str(raw.get("last_updated")),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"manifest_version": self.manifest_version, "description": self.description}
        if self.author:
            out["author"] = self.author
        if self.last_updated:
            out["last_updated"] = self.last_updated
        return out


@dataclass(frozen=True)
class DeploymentManifest:
    """Parsed ``deployment-manifest.yml`` (or a synthesized stand-in)."""

    id: str | None = None
    version: str | None = None
    name: str | None = None
    description: str = ""
    author: str | None = None
    license: str | None = None
    repository: Any = None
    tags: tuple[str, ...] = ()
    environments: tuple[str, ...] = ()
    prompts: tuple[PromptItem, ...] = ()
    dependencies: tuple[Any, ...] = ()
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    common: CommonSection = field(default_factory=CommonSection)
    bundle_settings: BundleSettings = field(default_factory=BundleSettings)
    metadata: ManifestMetadata = field(default_factory=ManifestMetadata)
    synthesized: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, synthesized: bool = False) -> DeploymentManifest:
        prompts_raw = raw.get("prompts")
        prompts: list[PromptItem] = []
        if isinstance(prompts_raw, list):
            for entry in prompts_raw:
                item = PromptItem.from_dict(entry)
                if item is not None:
                    prompts.append(item)

        servers_raw = raw.get("mcpServers")
        servers: dict[str, dict[str, Any]] = {}
        if isinstance(servers_raw, dict):
            for name, definition in servers_raw.items():
                if isinstance(definition, dict):
                    servers[str(name)] = _json_safe(definition)

        deps = raw.get("dependencies")
        envs = raw.get("environments")
        return cls(
            id=_opt_str(raw.get("id")),
            version=_opt_str(raw.get("version")),
            name=_opt_str(raw.get("name")),
            description=str(raw.get("description") or ""),
            author=_opt_str(raw.get("author")),
            license=_opt_str(raw.get("license")),
            repository=_json_safe(raw.get("repository")),
            tags=_str_tuple(raw.get("tags")),
            # environments is a name list in bundle manifests but a mapping in build manifests
            environments=tuple(str(k) for k in envs) if isinstance(envs, (list, dict)) else (),
            prompts=tuple(prompts),
            dependencies=tuple(_json_safe(deps)) if isinstance(deps, list) else (),
            mcp_servers=servers,
            common=CommonSection.from_dict(raw.get("common")),
            bundle_settings=BundleSettings.from_dict(raw.get("bundle_settings")),
            metadata=ManifestMetadata.from_dict(raw.get("metadata")),
            synthesized=synthesized,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in ("id", "version", "name", "author", "license", "repository"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        if self.description:
            out["description"] = self.description
        if self.tags:
            out["tags"] = list(self.tags)
        if self.environments:
            out["environments"] = list(self.environments)
        if self.prompts:
            out["prompts"] = [p.to_dict() for p in self.prompts]
        if self.dependencies:
            out["dependencies"] = list(self.dependencies)
        if self.mcp_servers:
            out["mcpServers"] = {k: dict(v) for k, v in self.mcp_servers.items()}
        out["common"] = self.common.to_dict()
        out["bundle_settings"] = self.bundle_settings.to_dict()
        out["metadata"] = self.metadata.to_dict()
        if self.synthesized:
            out["synthesized"] = True
        return out


@dataclass(frozen=True)
class InstallOptions:
    scope: str = "user"
    profile_id: str | None = None
    version: str | None = None
    commit_mode: str | None = None  # repository scope only


@dataclass(frozen=True)
class InstalledBundleRecord:
    bundle_id: str
    version: str
    installed_at: str
    scope: str
    install_path: Path
    manifest: DeploymentManifest
    source_id: str | None = None
    source_type: str | None = None
    profile_id: str | None = None
    commit_mode: str | None = None
    skill_folders: tuple[str, ...] = ()
    files_missing: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "bundle_id": self.bundle_id,
            "version": self.version,
            "installed_at": self.installed_at,
            "scope": self.scope,
            "install_path": str(self.install_path),
            "manifest": self.manifest.to_dict(),
        }
        for key in ("source_id", "source_type", "profile_id", "commit_mode"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        if self.skill_folders:
            out["skill_folders"] = list(self.skill_folders)
        if self.files_missing:
            out["files_missing"] = True
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> InstalledBundleRecord:
        manifest_raw = raw.get("manifest")
        manifest = (
            DeploymentManifest.from_dict(manifest_raw, synthesized=bool(manifest_raw.get("synthesized")))
            if isinstance(manifest_raw, dict)
            else DeploymentManifest(synthesized=True)
        )
        return cls(
            bundle_id=str(raw["bundle_id"]),
            version=str(raw.get("version") or ""),
            installed_at=str(raw.get("installed_at") or ""),
            scope=parse_scope(str(raw.get("scope") or "user")),
            install_path=Path(str(raw.get("install_path") or "")),
            manifest=manifest,
            source_id=_opt_str(raw.get("source_id")),
            source_type=_opt_str(raw.get("source_type")),
            profile_id=_opt_str(raw.get("profile_id")),
            commit_mode=_opt_str(raw.get("commit_mode")),
            skill_folders=_str_tuple(raw.get("skill_folders")),
            files_missing=bool(raw.get("files_missing", False)),
        )


@dataclass(frozen=True)
class FileChecksum:
    path: str  # POSIX, relative to the workspace root
    checksum: str


@dataclass(frozen=True)
class LockfileSource:
    type: str
    url: str = ""


@dataclass(frozen=True)
class LockfileEntry:
    bundle_id: str
    version: str
    source_id: str | None
    source_type: str | None
    commit_mode: str
    source: LockfileSource
    files: tuple[FileChecksum, ...] = ()
    installed_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "source_id": self.source_id,
            "source_type": self.source_type,
            "commit_mode": self.commit_mode,
            "installed_at": self.installed_at,
            "source": {"type": self.source.type, "url": self.source.url},
            "files": [{"path": f.path, "checksum": f.checksum} for f in self.files],
        }

    @classmethod
    def from_dict(cls, bundle_id: str, raw: dict[str, Any]) -> LockfileEntry:
        source_raw = raw.get("source")
        source = (
            LockfileSource(type=str(source_raw.get("type") or "unknown"), url=str(source_raw.get("url") or ""))
            if isinstance(source_raw, dict)
            else LockfileSource(type="unknown")
        )
        files: list[FileChecksum] = []
        files_raw = raw.get("files")
        if isinstance(files_raw, list):
            for item in files_raw:
                if isinstance(item, dict) and isinstance(item.get("path"), str) and isinstance(item.get("checksum"), str):
                    files.append(FileChecksum(path=item["path"], checksum=item["checksum"]))
        return cls(
            bundle_id=bundle_id,
            version=str(raw.get("version") or ""),
            source_id=_opt_str(raw.get("source_id")),
            source_type=_opt_str(raw.get("source_type")),
            commit_mode=str(raw.get("commit_mode") or "commit"),
            source=source,
            files=tuple(files),
            installed_at=str(raw.get("installed_at") or ""),
        )


@dataclass(frozen=True)
class PathExistsResult:
    exists: bool
    is_symbolic_link: bool
    is_broken: bool


@dataclass
class McpInstallResult:
    success: bool = False
    servers_installed: int = 0
    installed_servers: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class McpUninstallResult:
    success: bool = False
    servers_removed: int = 0
    removed_servers: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class InstallOutcome:
    """An installed record plus whatever the best-effort side steps reported."""

    record: InstalledBundleRecord
    mcp: McpInstallResult | None = None
    lockfile_written: bool | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class UninstallOutcome:
    record: InstalledBundleRecord
    mcp: McpUninstallResult | None = None
    lockfile_updated: bool | None = None
    removed_paths: tuple[Path, ...] = ()
