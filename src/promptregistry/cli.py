from __future__ import annotations

import argparse
import json
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from ._version import __version__
from .client import BundleClient
from .config import Config, apply_env, config_path, load_config, save_config
from .errors import BundleHTTPError, InstallationCancelled, PromptRegistryError
from .installer import BundleInstaller
from .lockfile import LockfileManager
from .logging import setup_logging
from .materialize import ConfirmOverwrite
from .models import COMMIT_MODES, SCOPES, BundleDescriptor, InstalledBundleRecord, InstallOptions, InstallOutcome
from .paths import PathResolver
from .sync import create_synchronizer


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env(base)
    updates: dict[str, Any] = {}
    for attr, key in (
        ("workspace", "workspace_root"),
        ("workspace_storage", "workspace_storage_dir"),
        ("global_storage", "global_storage_dir"),
        ("timeout_s", "timeout_s"),
    ):
        value = getattr(args, attr, None)
        if value is not None:
            updates[key] = value
    return replace(cfg, **updates) if updates else cfg


def _confirm_overwrite(args: argparse.Namespace) -> ConfirmOverwrite | None:
    if getattr(args, "yes", False):
        return lambda name, path, is_symlink: True
    if not sys.stdin.isatty():
        return None

    def _ask(name: str, path: Path, is_symlink: bool) -> bool:
        kind = "symlink" if is_symlink else "directory"
        answer = input(f"Skill {name!r} already exists ({kind} at {path}). Overwrite? [y/N] ")
        return answer.strip().lower() in ("y", "yes")

    return _ask


def _make_installer(args: argparse.Namespace) -> BundleInstaller:
    cfg = _merge_cfg(load_config(), args)
    return BundleInstaller(cfg, confirm_overwrite=_confirm_overwrite(args))


def _local_source_dir(source: str) -> Path | None:
    parts = urlsplit(source)
    if parts.scheme in ("http", "https"):
        return None
    path = Path(parts.path if parts.scheme == "file" else source).expanduser()
    return path if path.is_dir() else None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="prompt-registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install and sync prompt bundles into user, workspace and repository scopes.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              PROMPT_REGISTRY_CONFIG_PATH, PROMPT_REGISTRY_WORKSPACE, PROMPT_REGISTRY_WORKSPACE_STORAGE,
              PROMPT_REGISTRY_GLOBAL_STORAGE, PROMPT_REGISTRY_HOST_USER_DIR, PROMPT_REGISTRY_SKILLS_DIR,
              PROMPT_REGISTRY_TIMEOUT_S
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser, *, sub: bool = True) -> None:
        # Accepted before and after the subcommand; the subcommand copy must not reset the top-level value.
        default = argparse.SUPPRESS if sub else None
        parser.add_argument("--workspace", default=default, help="Workspace root directory")
        parser.add_argument("--workspace-storage", default=default, help="Per-workspace storage directory")
        parser.add_argument("--global-storage", default=default, help="Global storage directory")
        parser.add_argument("--timeout-s", type=float, default=default, help="HTTP timeout in seconds")

    _add_runtime_overrides(p, sub=False)
    p.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    p.add_argument("-v", "--verbose", action="store_true", help="Shortcut for --log-level INFO")
    p.add_argument("--version", action="version", version=f"prompt-registry {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--global-storage-dir")
    cfg_set.add_argument("--workspace-storage-dir")
    cfg_set.add_argument("--workspace-root")
    cfg_set.add_argument("--host-user-dir", help="Directory holding the host's prompts/ folder")
    cfg_set.add_argument("--skills-dir")
    cfg_set.add_argument("--mirror-claude-skills", choices=["true", "false"])
    cfg_set.add_argument("--timeout-s", type=float)

    def _add_install_args(parser: argparse.ArgumentParser) -> None:
        _add_runtime_overrides(parser)
        parser.add_argument("bundle_id", help="Bundle identifier")
        parser.add_argument("source", help="Bundle zip (URL or path) or an extracted bundle directory")
        parser.add_argument("--version", dest="bundle_version", default="latest", help="Expected version (default: latest)")
        parser.add_argument("--scope", choices=SCOPES, default="user")
        parser.add_argument("--commit-mode", choices=COMMIT_MODES, help="Repository scope only")
        parser.add_argument("--source-type", help="Source type, e.g. github, skills, olaf")
        parser.add_argument("--source-name", help="Source name (namespaces external skills)")
        parser.add_argument("--source-id", help="Source identifier recorded with the install")
        parser.add_argument("--profile", help="Profile id recorded with the install")
        parser.add_argument("--yes", "-y", action="store_true", help="Overwrite existing skills without asking")
        parser.add_argument("--json", action="store_true", help="Output JSON")

    install = sub.add_parser("install", aliases=["i"], help="Install a bundle")
    _add_install_args(install)

    update = sub.add_parser("update", help="Replace an installed bundle with a new version")
    _add_install_args(update)
    update.add_argument("--previous-id", help="Bundle id of the installed version, when it differs")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Uninstall a bundle")
    _add_runtime_overrides(uninstall)
    uninstall.add_argument("bundle_id")
    uninstall.add_argument("--scope", choices=SCOPES, default="user")
    uninstall.add_argument("--json", action="store_true", help="Output JSON")

    ls = sub.add_parser("list", aliases=["ls"], help="List installed bundles")
    _add_runtime_overrides(ls)
    ls.add_argument("--scope", choices=SCOPES, default="user")
    ls.add_argument("--json", action="store_true", help="Output JSON")

    status = sub.add_parser("status", help="Show what is synced into a scope's native directories")
    _add_runtime_overrides(status)
    status.add_argument("--scope", choices=SCOPES, default="user")
    status.add_argument("--json", action="store_true", help="Output JSON")

    lock = sub.add_parser("lockfile", help="Inspect the workspace lockfile")
    lock_sub = lock.add_subparsers(dest="subcmd", required=True)
    lock_show = lock_sub.add_parser("show", help="Print lockfile entries")
    _add_runtime_overrides(lock_show)
    lock_show.add_argument("--json", action="store_true", help="Output JSON")
    lock_verify = lock_sub.add_parser("verify", help="Check recorded checksums against the repository")
    _add_runtime_overrides(lock_verify)
    lock_verify.add_argument("bundle_id", nargs="?")
    lock_verify.add_argument("--json", action="store_true", help="Output JSON")

    skill = sub.add_parser("skill", help="Link live local skills")
    skill_sub = skill.add_subparsers(dest="subcmd", required=True)
    skill_link = skill_sub.add_parser("link", help="Symlink a local skill directory into the skills root")
    _add_runtime_overrides(skill_link)
    skill_link.add_argument("path")
    skill_link.add_argument("--name", help="Skill name (default: directory name)")
    skill_link.add_argument("--scope", choices=("user", "workspace"), default="user")
    skill_link.add_argument("--yes", "-y", action="store_true", help="Overwrite an existing skill without asking")
    skill_unlink = skill_sub.add_parser("unlink", help="Remove a linked skill")
    _add_runtime_overrides(skill_unlink)
    skill_unlink.add_argument("name")
    skill_unlink.add_argument("--scope", choices=("user", "workspace"), default="user")

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        _print_json(asdict(load_config()))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        updates: dict[str, Any] = {}
        for key in (
            "global_storage_dir",
            "workspace_storage_dir",
            "workspace_root",
            "host_user_dir",
            "skills_dir",
            "timeout_s",
        ):
            value = getattr(args, key)
            if value is not None:
                updates[key] = value
        if args.mirror_claude_skills is not None:
            updates["mirror_claude_skills"] = args.mirror_claude_skills == "true"
        path = save_config(replace(cfg, **updates))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def _record_payload(record: InstalledBundleRecord) -> dict[str, Any]:
    payload = record.to_dict()
    payload.pop("manifest", None)
    return payload


def _print_outcome(outcome: InstallOutcome, *, as_json: bool) -> None:
    payload = _record_payload(outcome.record)
    payload["warnings"] = list(outcome.warnings)
    if outcome.mcp is not None:
        payload["mcp_servers"] = list(outcome.mcp.installed_servers)
    if outcome.lockfile_written is not None:
        payload["lockfile_written"] = outcome.lockfile_written
    if as_json:
        _print_json(payload)
        return
    r = outcome.record
    print(f"installed: {r.bundle_id}@{r.version} ({r.scope})")
    print(f"path: {r.install_path}")
    for name in payload.get("mcp_servers", []):
        print(f"mcp server: {name}")
    for warning in outcome.warnings:
        print(f"warning: {warning}")


def _install_or_update(args: argparse.Namespace, *, update: bool) -> int:
    installer = _make_installer(args)
    is_remote = urlsplit(args.source).scheme in ("http", "https")
    descriptor = BundleDescriptor(
        id=args.bundle_id,
        version=args.bundle_version,
        name=args.bundle_id,
        source_id=args.source_id,
        download_url=args.source if is_remote else None,
    )
    options = InstallOptions(scope=args.scope, profile_id=args.profile, commit_mode=args.commit_mode)
    kwargs = {"source_type": args.source_type, "source_name": args.source_name}

    local_dir = _local_source_dir(args.source)
    if local_dir is not None and not update:
        outcome = installer.install_from_path(descriptor, local_dir, options, **kwargs)
    else:
        if local_dir is not None:
            raise PromptRegistryError("update needs a bundle archive, not a directory")
        with BundleClient(timeout_s=installer.config.timeout_s) as client:
            data = client.download(args.source)
        if update:
            outcome = installer.update(descriptor, data, options, previous_bundle_id=args.previous_id, **kwargs)
        else:
            outcome = installer.install_from_buffer(descriptor, data, options, **kwargs)
    _print_outcome(outcome, as_json=args.json)
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    return _install_or_update(args, update=False)


def cmd_update(args: argparse.Namespace) -> int:
    return _install_or_update(args, update=True)


def cmd_uninstall(args: argparse.Namespace) -> int:
    installer = _make_installer(args)
    outcome = installer.uninstall(args.bundle_id, args.scope)
    payload = {
        "bundle_id": outcome.record.bundle_id,
        "version": outcome.record.version,
        "scope": outcome.record.scope,
        "removed": [str(p) for p in outcome.removed_paths],
        "mcp_servers_removed": list(outcome.mcp.removed_servers) if outcome.mcp else [],
    }
    if outcome.lockfile_updated is not None:
        payload["lockfile_updated"] = outcome.lockfile_updated
    if args.json:
        _print_json(payload)
        return 0
    print(f"uninstalled: {outcome.record.bundle_id}@{outcome.record.version} ({outcome.record.scope})")
    for p in payload["removed"]:
        print(f"removed: {p}")
    for name in payload["mcp_servers_removed"]:
        print(f"mcp server removed: {name}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    installer = _make_installer(args)
    records = installer.list_installed(args.scope)
    if args.json:
        _print_json([_record_payload(r) for r in records])
        return 0
    if not records:
        print(f"No bundles installed in {args.scope} scope.")
        return 0
    rows = [["BUNDLE", "VERSION", "SOURCE", "INSTALLED", "PATH"]]
    for r in records:
        flag = " (files missing)" if r.files_missing else ""
        rows.append([r.bundle_id, r.version, r.source_type or "-", r.installed_at, f"{r.install_path}{flag}"])
    _print_table(rows)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    installer = BundleInstaller(cfg)
    try:
        install_dirs = [r.install_path for r in installer.list_installed(args.scope)]
    except PromptRegistryError:
        install_dirs = []
    sync = create_synchronizer(args.scope, installer.resolver, mirror_claude=cfg.mirror_claude_skills)
    status = sync.status(install_dirs)
    if args.json:
        _print_json(status)
        return 0
    for key in sorted(status):
        value = status[key]
        if isinstance(value, (list, dict)):
            continue
        print(f"{key}: {value}")
    for name in status.get("files", []):
        print(f"file: {name}")
    for name in status.get("skills", []):
        print(f"skill: {name}")
    for folder, names in sorted(status.get("entries", {}).items()):
        for name in names:
            print(f"{folder}: {name}")
    return 0


def cmd_lockfile(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    workspace = PathResolver(cfg).require_workspace()
    manager = LockfileManager(workspace)

    if args.subcmd == "show":
        entries = manager.entries()
        if args.json:
            _print_json({bid: e.to_dict() for bid, e in entries.items()})
            return 0
        if not entries:
            print(f"No lockfile entries in {manager.path}")
            return 0
        rows = [["BUNDLE", "VERSION", "SOURCE", "COMMIT", "FILES"]]
        for bid, e in entries.items():
            rows.append([bid, e.version, e.source_type or "-", e.commit_mode, str(len(e.files))])
        _print_table(rows)
        return 0

    if args.subcmd == "verify":
        report = manager.verify(args.bundle_id)
        ok = all(not problems for problems in report.values())
        if args.json:
            _print_json({"ok": ok, "bundles": report})
        else:
            for bid, problems in report.items():
                print(f"{bid}: {'ok' if not problems else f'{len(problems)} problem(s)'}")
                for problem in problems:
                    print(f"  {problem}")
        return 0 if ok else 1

    raise AssertionError("unreachable")


def cmd_skill(args: argparse.Namespace) -> int:
    installer = _make_installer(args)
    if args.subcmd == "link":
        target = installer.install_local_skill(Path(args.path).expanduser(), scope=args.scope, name=args.name)
        print(f"linked: {target}")
        return 0
    if args.subcmd == "unlink":
        if installer.uninstall_local_skill(args.name, scope=args.scope):
            print(f"removed: {args.name}")
        else:
            print(f"not installed: {args.name}")
        return 0
    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging("INFO" if args.verbose else args.log_level, stream=sys.stderr)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "status":
            return cmd_status(args)
        if args.cmd == "lockfile":
            return cmd_lockfile(args)
        if args.cmd == "skill":
            return cmd_skill(args)
        raise AssertionError("unreachable")
    except InstallationCancelled as e:
        print(f"cancelled: {e}", file=sys.stderr)
        return 0
    except BundleHTTPError as e:
        print(f"error: download failed with HTTP {e.status_code}", file=sys.stderr)
        return 1
    except PromptRegistryError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
