from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path

from .archive import cleanup_temp_dir, extract_bundle, local_bundle_dir
from .config import Config
from .errors import PromptRegistryError, SkillNotFoundError
from .lockfile import LockfileRegistry, checksum_files, checksum_tree, records_from_lockfile
from .logging import get_logger
from .manifest import LATEST, MANIFEST_FILENAME, validate_bundle
from .materialize import (
    ConfirmOverwrite,
    clear_skill_target,
    copy_skill_folders,
    copy_tree,
    install_skill_symlink,
    remove_empty_dir,
    remove_tree,
    uninstall_skill_symlink,
)
from .mcp import McpServerInstaller
from .models import (
    BundleDescriptor,
    DeploymentManifest,
    FileChecksum,
    InstalledBundleRecord,
    InstallOptions,
    InstallOutcome,
    LockfileEntry,
    LockfileSource,
    McpInstallResult,
    UninstallOutcome,
    parse_commit_mode,
    parse_scope,
    utc_now,
)
from .paths import PathResolver, is_external_skills_bundle, is_skills_bundle
from .records import RecordStore
from .sync import RepositoryScopeSync, ScopeSynchronizer, create_synchronizer

logger = get_logger("installer")


@dataclass(frozen=True)
class _Prepared:
    descriptor: BundleDescriptor
    manifest: DeploymentManifest
    version: str


class BundleInstaller:
    """Install, uninstall and update bundles across the three scopes.

    Structural steps (extraction, validation, path resolution, copying, sync)
    raise. MCP registration, lockfile writes and temp cleanup only log and report
    through the returned outcome.
    """

    def __init__(
        self,
        config: Config,
        *,
        resolver: PathResolver | None = None,
        mcp: McpServerInstaller | None = None,
        lockfiles: LockfileRegistry | None = None,
        confirm_overwrite: ConfirmOverwrite | None = None,
        temp_root: Path | None = None,
    ) -> None:
        self.config = config
        self.resolver = resolver or PathResolver(config)
        self.mcp = mcp or McpServerInstaller(self.resolver)
        self.lockfiles = lockfiles or LockfileRegistry()
        self.confirm_overwrite = confirm_overwrite
        self.temp_root = temp_root

    # -- public API --------------------------------------------------------

    def install_from_buffer(
        self,
        descriptor: BundleDescriptor,
        zip_bytes: bytes,
        options: InstallOptions,
        *,
        source_type: str | None = None,
        source_name: str | None = None,
    ) -> InstallOutcome:
        extracted = extract_bundle(zip_bytes, temp_root=self.temp_root)
        try:
            prepared = self._prepare(descriptor, extracted, options, source_type)
            return self._install(prepared, extracted, options, source_type, source_name)
        finally:
            cleanup_temp_dir(extracted)

    def install_from_path(
        self,
        descriptor: BundleDescriptor,
        location: str | Path,
        options: InstallOptions,
        *,
        source_type: str | None = None,
        source_name: str | None = None,
    ) -> InstallOutcome:
        """Install from an already extracted directory (a path or ``file://`` URL)."""
        bundle_dir = self._local_dir(location)
        prepared = self._prepare(descriptor, bundle_dir, options, source_type)
        return self._install(prepared, bundle_dir, options, source_type, source_name)

    def update(
        self,
        descriptor: BundleDescriptor,
        zip_bytes: bytes,
        options: InstallOptions,
        *,
        previous_bundle_id: str | None = None,
        source_type: str | None = None,
        source_name: str | None = None,
    ) -> InstallOutcome:
        """Replace an installed bundle. The new archive is validated before anything is removed."""
        extracted = extract_bundle(zip_bytes, temp_root=self.temp_root)
        try:
            prepared = self._prepare(descriptor, extracted, options, source_type)
            old_id = previous_bundle_id or descriptor.id
            old = self.get_installed(old_id, options.scope)
            if old is not None:
                options = replace(
                    options,
                    profile_id=options.profile_id or old.profile_id,
                    commit_mode=options.commit_mode or old.commit_mode,
                )
                self.uninstall(old_id, options.scope)
            else:
                logger.info("No existing install of %s in %s scope, installing fresh", old_id, options.scope)
            return self._install(prepared, extracted, options, source_type, source_name)
        finally:
            cleanup_temp_dir(extracted)

    def uninstall(self, bundle_id: str, scope: str) -> UninstallOutcome:
        scope = parse_scope(scope)
        store = RecordStore.for_scope(self.resolver, scope)
        record = store.get(bundle_id)
        if record is None and scope == "repository":
            lockfile = self.lockfiles.for_workspace(self.resolver.require_workspace())
            record = next((r for r in records_from_lockfile(lockfile, self.resolver) if r.bundle_id == bundle_id), None)
        if record is None:
            raise PromptRegistryError(f"Bundle {bundle_id} is not installed in {scope} scope")

        mcp_result = None
        removed: list[Path] = []
        if is_skills_bundle(record.source_type):
            if uninstall_skill_symlink(record.install_path):
                removed.append(record.install_path)
        elif is_external_skills_bundle(bundle_id, record.source_type):
            for folder in record.skill_folders:
                if remove_tree(record.install_path / folder):
                    removed.append(record.install_path / folder)
            if record.install_path.is_dir():
                remove_empty_dir(record.install_path)
        else:
            mcp_result = self.mcp.uninstall(bundle_id, scope)
            sync = self._synchronizer(scope, record.commit_mode)
            if isinstance(sync, RepositoryScopeSync) and not (record.install_path / MANIFEST_FILENAME).is_file():
                removed.extend(sync.unsync_recorded(self._locked_files(bundle_id)))
            else:
                removed.extend(sync.unsync_bundle(bundle_id, record.install_path))
            target = record.install_path
            if self.resolver.is_protected(target):
                logger.warning("Refusing to remove shared directory %s, removing the bundle cache instead", target)
                target = self.resolver.resolve_install_dir(bundle_id, scope, record.source_type)
            if remove_tree(target):
                removed.append(target)

        lockfile_updated = None
        if scope == "repository":
            lockfile = self.lockfiles.for_workspace(self.resolver.require_workspace())
            lockfile_updated = lockfile.remove(bundle_id)

        store.remove(bundle_id)
        logger.info("Uninstalled %s from %s scope", bundle_id, scope)
        return UninstallOutcome(
            record=record,
            mcp=mcp_result,
            lockfile_updated=lockfile_updated,
            removed_paths=tuple(removed),
        )

    def get_installed(self, bundle_id: str, scope: str) -> InstalledBundleRecord | None:
        return RecordStore.for_scope(self.resolver, scope).get(bundle_id)

    def list_installed(self, scope: str) -> list[InstalledBundleRecord]:
        scope = parse_scope(scope)
        records = RecordStore.for_scope(self.resolver, scope).load()
        if scope == "repository":
            lockfile = self.lockfiles.for_workspace(self.resolver.require_workspace())
            for record in records_from_lockfile(lockfile, self.resolver):
                records.setdefault(record.bundle_id, record)
        return [records[k] for k in sorted(records)]

    def install_local_skill(self, source_dir: Path, *, scope: str = "user", name: str | None = None) -> Path:
        """Link a live local skill directory into the skills root."""
        if not (source_dir / "SKILL.md").is_file():
            raise SkillNotFoundError(f"No SKILL.md in {source_dir}")
        target = self.resolver.skills_root(scope) / (name or source_dir.name)
        install_skill_symlink(source_dir, target, self.confirm_overwrite)
        return target

    def uninstall_local_skill(self, name: str, *, scope: str = "user") -> bool:
        return uninstall_skill_symlink(self.resolver.skills_root(scope) / name)

    # -- pipeline ----------------------------------------------------------

    def _local_dir(self, location: str | Path) -> Path:
        if isinstance(location, str):
            from_url = local_bundle_dir(location)
            if from_url is not None:
                return from_url
        path = Path(location).expanduser()
        if not path.is_dir():
            raise PromptRegistryError(f"Local bundle directory not found: {path}")
        return path

    def _prepare(
        self,
        descriptor: BundleDescriptor,
        bundle_dir: Path,
        options: InstallOptions,
        source_type: str | None,
    ) -> _Prepared:
        parse_scope(options.scope)
        parse_commit_mode(options.commit_mode)
        if options.version:
            descriptor = replace(descriptor, version=options.version)
        manifest = validate_bundle(bundle_dir, descriptor)

        if not is_external_skills_bundle(descriptor.id, source_type):
            for item in manifest.prompts:
                name = item.skill_name
                if name is not None and not (bundle_dir / "skills" / name).is_dir():
                    raise SkillNotFoundError(f"Skill {name!r} is declared but missing from bundle {descriptor.id}")

        version = descriptor.version
        if version == LATEST and manifest.version:
            version = manifest.version
        return _Prepared(descriptor=descriptor, manifest=manifest, version=version)

    def _install(
        self,
        prepared: _Prepared,
        bundle_dir: Path,
        options: InstallOptions,
        source_type: str | None,
        source_name: str | None,
    ) -> InstallOutcome:
        scope = parse_scope(options.scope)
        if is_skills_bundle(source_type):
            return self._install_skills_bundle(prepared, bundle_dir, options, source_type)
        if is_external_skills_bundle(prepared.descriptor.id, source_type):
            return self._install_external_skills(prepared, bundle_dir, options, source_type, source_name)

        bundle_id = prepared.descriptor.id
        install_dir = self.resolver.resolve_install_dir(bundle_id, scope, source_type, source_name)
        if self.resolver.is_protected(install_dir):
            raise PromptRegistryError(f"Refusing to install into shared directory {install_dir}")

        logger.info("Installing %s@%s into %s", bundle_id, prepared.version, install_dir)
        remove_tree(install_dir)

        warnings: list[str] = []
        commit_mode = (options.commit_mode or "commit") if scope == "repository" else None
        sync = self._synchronizer(scope, commit_mode)
        try:
            copy_tree(bundle_dir, install_dir)
            mcp_result = self._install_mcp(bundle_id, prepared.version, install_dir, prepared.manifest, scope, commit_mode)
            warnings.extend(mcp_result.warnings)
            warnings.extend(mcp_result.errors)

            sync.sync_bundle(bundle_id, install_dir, prepared.manifest)
            warnings.extend(sync.warnings)

            record = self._record(prepared, scope, install_dir, options, source_type, commit_mode)
            lockfile_written = None
            if isinstance(sync, RepositoryScopeSync):
                files = self._synced_checksums(sync, install_dir, prepared.manifest)
                lockfile_written = self._write_lockfile(record, prepared.descriptor, files)
                if not lockfile_written:
                    warnings.append("Lockfile could not be updated")

            RecordStore.for_scope(self.resolver, scope).put(record)
        except Exception:
            self._rollback(bundle_id, scope, install_dir, sync)
            raise
        return InstallOutcome(record=record, mcp=mcp_result, lockfile_written=lockfile_written, warnings=tuple(warnings))

    def _install_skills_bundle(
        self,
        prepared: _Prepared,
        bundle_dir: Path,
        options: InstallOptions,
        source_type: str | None,
    ) -> InstallOutcome:
        skills_dir = bundle_dir / "skills"
        candidates = sorted(p for p in skills_dir.iterdir() if p.is_dir()) if skills_dir.is_dir() else []
        if not candidates:
            raise SkillNotFoundError(f"No skill directory found under skills/ in bundle {prepared.descriptor.id}")
        source = candidates[0]

        scope = parse_scope(options.scope)
        if scope == "repository":
            target = self.resolver.repository_root() / "skills" / source.name
        else:
            target = self.resolver.skills_root(scope) / source.name
        clear_skill_target(target, self.confirm_overwrite)
        copy_tree(source, target)
        logger.info("Installed skill %s into %s", source.name, target)

        commit_mode = (options.commit_mode or "commit") if scope == "repository" else None
        record = self._record(prepared, scope, target, options, source_type, commit_mode)
        lockfile_written = None
        warnings: list[str] = []
        if scope == "repository":
            files = checksum_files((p for p in target.rglob("*") if p.is_file()), base=self.resolver.require_workspace())
            lockfile_written = self._write_lockfile(record, prepared.descriptor, files)
            if not lockfile_written:
                warnings.append("Lockfile could not be updated")
        RecordStore.for_scope(self.resolver, scope).put(record)
        return InstallOutcome(record=record, lockfile_written=lockfile_written, warnings=tuple(warnings))

    def _install_external_skills(
        self,
        prepared: _Prepared,
        bundle_dir: Path,
        options: InstallOptions,
        source_type: str | None,
        source_name: str | None,
    ) -> InstallOutcome:
        scope = parse_scope(options.scope)
        install_dir = self.resolver.resolve_install_dir(prepared.descriptor.id, scope, source_type, source_name)
        folders = copy_skill_folders(bundle_dir, install_dir)
        if not folders:
            raise SkillNotFoundError(f"Bundle {prepared.descriptor.id} contains no skill folders")
        logger.info("Installed %d external skill(s) into %s", len(folders), install_dir)

        mcp_result = self._install_mcp(
            prepared.descriptor.id, prepared.version, install_dir, prepared.manifest, scope, options.commit_mode
        )
        record = replace(
            self._record(prepared, scope, install_dir, options, source_type, None),
            skill_folders=tuple(folders),
        )
        RecordStore.for_scope(self.resolver, scope).put(record)
        return InstallOutcome(record=record, mcp=mcp_result, warnings=tuple(mcp_result.warnings + mcp_result.errors))

    # -- helpers -----------------------------------------------------------

    def _synchronizer(self, scope: str, commit_mode: str | None) -> ScopeSynchronizer:
        return create_synchronizer(
            scope, self.resolver, commit_mode=commit_mode, mirror_claude=self.config.mirror_claude_skills
        )

    def _install_mcp(
        self,
        bundle_id: str,
        version: str,
        install_dir: Path,
        manifest: DeploymentManifest,
        scope: str,
        commit_mode: str | None,
    ) -> McpInstallResult:
        try:
            result = self.mcp.install(bundle_id, version, install_dir, manifest, scope, commit_mode)
        except Exception as e:
            result = McpInstallResult(success=False, errors=[str(e)])
        if result.errors:
            logger.warning("MCP servers for %s not fully installed: %s", bundle_id, "; ".join(result.errors))
        return result

    def _rollback(self, bundle_id: str, scope: str, install_dir: Path, sync: ScopeSynchronizer) -> None:
        """Undo a half-finished install. The bundle cache is removed last."""
        logger.warning("Install of %s failed, rolling back", bundle_id)
        self.mcp.uninstall(bundle_id, scope)
        try:
            sync.unsync_bundle(bundle_id, install_dir)
        except (PromptRegistryError, OSError) as e:
            logger.error("Rollback could not unsync %s: %s", bundle_id, e)
        if isinstance(sync, RepositoryScopeSync):
            self.lockfiles.for_workspace(self.resolver.require_workspace()).remove(bundle_id)
        try:
            remove_tree(install_dir)
        except OSError as e:
            logger.error("Rollback could not remove %s: %s", install_dir, e)

    def _locked_files(self, bundle_id: str) -> tuple[FileChecksum, ...]:
        try:
            entry = self.lockfiles.for_workspace(self.resolver.require_workspace()).get(bundle_id)
        except PromptRegistryError as e:
            logger.warning("Cannot read lockfile entry for %s: %s", bundle_id, e)
            return ()
        return entry.files if entry is not None else ()

    def _record(
        self,
        prepared: _Prepared,
        scope: str,
        install_path: Path,
        options: InstallOptions,
        source_type: str | None,
        commit_mode: str | None,
    ) -> InstalledBundleRecord:
        return InstalledBundleRecord(
            bundle_id=prepared.descriptor.id,
            version=prepared.version,
            installed_at=utc_now(),
            scope=scope,
            install_path=install_path,
            manifest=prepared.manifest,
            source_id=prepared.descriptor.source_id,
            source_type=source_type,
            profile_id=options.profile_id,
            commit_mode=commit_mode,
        )

    def _synced_checksums(
        self, sync: RepositoryScopeSync, install_dir: Path, manifest: DeploymentManifest
    ) -> tuple[FileChecksum, ...]:
        workspace = self.resolver.require_workspace()
        try:
            return checksum_files(sync.synced_files(install_dir, manifest), base=workspace)
        except (PromptRegistryError, OSError, ValueError) as e:
            logger.warning("Could not read synced files for the lockfile (%s), using the bundle cache", e)
            return checksum_tree(install_dir)

    def _write_lockfile(
        self,
        record: InstalledBundleRecord,
        descriptor: BundleDescriptor,
        files: tuple[FileChecksum, ...],
    ) -> bool:
        entry = LockfileEntry(
            bundle_id=record.bundle_id,
            version=record.version,
            source_id=record.source_id,
            source_type=record.source_type,
            commit_mode=record.commit_mode or "commit",
            source=LockfileSource(type=record.source_type or "unknown", url=descriptor.download_url or ""),
            files=files,
            installed_at=record.installed_at,
        )
        try:
            lockfile = self.lockfiles.for_workspace(self.resolver.require_workspace())
        except PromptRegistryError as e:
            logger.error("Cannot write lockfile: %s", e)
            return False
        return lockfile.create_or_update(entry)
