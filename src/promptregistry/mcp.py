from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .errors import PromptRegistryError
from .gitexclude import add_entries, remove_entries
from .logging import get_logger
from .materialize import write_json_atomic
from .models import DeploymentManifest, McpInstallResult, McpUninstallResult, parse_scope, utc_now
from .paths import PathResolver

logger = get_logger("mcp")

SERVER_PREFIX = "prompt-registry"
TRACKING_FILENAME = "prompt-registry-mcp-tracking.json"
CONFIG_FILENAME = "mcp.json"
TRACKING_VERSION = "1.0.0"
WORKSPACE_CONFIG_REL = ".vscode/mcp.json"
REMOTE_TYPES = frozenset({"http", "sse"})

_PREFIXED_RE = re.compile(r"^prompt-registry:([^:]+):(.+)$")
_ENV_RE = re.compile(r"\$\{env:([^}]+)\}")


def prefixed_server_name(bundle_id: str, server_name: str) -> str:
    return f"{SERVER_PREFIX}:{bundle_id}:{server_name}"


def parse_server_prefix(name: str) -> tuple[str, str] | None:
    m = _PREFIXED_RE.match(name)
    return (m.group(1), m.group(2)) if m else None


def substitute(value: str | None, *, bundle_path: str, bundle_id: str, bundle_version: str, env: Mapping[str, str]) -> str | None:
    if not value:
        return value
    out = value.replace("${bundlePath}", bundle_path)
    out = out.replace("${bundleId}", bundle_id)
    out = out.replace("${bundleVersion}", bundle_version)
    return _ENV_RE.sub(lambda m: env.get(m.group(1), ""), out)


def is_remote(definition: Mapping[str, Any]) -> bool:
    return definition.get("type") in REMOTE_TYPES or ("url" in definition and "command" not in definition)


def process_server_definition(
    definition: Mapping[str, Any],
    *,
    bundle_id: str,
    bundle_version: str,
    bundle_path: Path,
    env: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    ctx = {
        "bundle_path": str(bundle_path),
        "bundle_id": bundle_id,
        "bundle_version": bundle_version,
        "env": os.environ if env is None else env,
    }
    out: dict[str, Any] = {}
    if is_remote(definition):
        if definition.get("type"):
            out["type"] = definition["type"]
        out["url"] = substitute(str(definition.get("url") or ""), **ctx)
        headers = definition.get("headers")
        if isinstance(headers, dict):
            out["headers"] = {str(k): substitute(str(v), **ctx) for k, v in headers.items()}
    else:
        if definition.get("type"):
            out["type"] = definition["type"]
        out["command"] = substitute(str(definition.get("command") or ""), **ctx)
        args = definition.get("args")
        if isinstance(args, list):
            out["args"] = [substitute(str(a), **ctx) for a in args]
        env_map = definition.get("env")
        if isinstance(env_map, dict):
            out["env"] = {str(k): substitute(str(v), **ctx) for k, v in env_map.items()}
        if definition.get("envFile"):
            out["envFile"] = substitute(str(definition["envFile"]), **ctx)
    if "disabled" in definition:
        out["disabled"] = bool(definition["disabled"])
    if definition.get("description"):
        out["description"] = str(definition["description"])
    return out


def server_identity(config: Mapping[str, Any]) -> str:
    if is_remote(config):
        return f"remote:{config.get('url', '')}"
    args = config.get("args") or []
    return f"stdio:{config.get('command', '')}:{'|'.join(str(a) for a in args)}"


def disable_duplicates(config: dict[str, Any], tracking: dict[str, Any]) -> list[str]:
    """Disable every enabled server whose identity repeats an earlier one. Mutates ``config``."""
    servers = config.setdefault("servers", {})
    managed = tracking.get("managedServers", {})
    seen: dict[str, tuple[str, str]] = {}
    disabled: list[str] = []
    for name, server in list(servers.items()):
        if not isinstance(server, dict) or server.get("disabled"):
            continue
        identity = server_identity(server)
        owner = managed.get(name, {}).get("bundleId", "unknown")
        if identity in seen:
            first_name, first_owner = seen[identity]
            servers[name] = {
                **server,
                "disabled": True,
                "description": f"Duplicate of {first_name} (from bundle {first_owner})",
            }
            disabled.append(name)
        else:
            seen[identity] = (name, owner)
    return disabled


@dataclass(frozen=True)
class McpLocation:
    config_path: Path
    tracking_path: Path
    workspace_root: Path | None = None  # set for repository scope only


class McpConfigStore:
    """Reads and writes one ``mcp.json`` plus its tracking sidecar."""

    def __init__(self, location: McpLocation) -> None:
        self.location = location

    def read_config(self) -> dict[str, Any]:
        path = self.location.config_path
        if not path.exists():
            return {"servers": {}}
        try:
            raw = json.loads(path.read_text(encoding="utf-8") or "{}")
        except ValueError as e:
            raise PromptRegistryError(f"Failed to read MCP configuration {path}: {e}") from e
        if not isinstance(raw, dict):
            raise PromptRegistryError(f"MCP configuration {path} is not a JSON object")
        if not isinstance(raw.get("servers"), dict):
            raw["servers"] = {}
        return raw

    def write_config(self, config: dict[str, Any], *, backup: bool = True) -> None:
        path = self.location.config_path
        if backup and path.exists():
            try:
                shutil.copyfile(path, path.with_name(path.name + ".backup"))
            except OSError as e:
                logger.warning("Failed to back up %s: %s", path, e)
        write_json_atomic(path, config)

    def read_tracking(self) -> dict[str, Any]:
        path = self.location.tracking_path
        if not path.exists():
            return {"managedServers": {}, "lastUpdated": utc_now(), "version": TRACKING_VERSION}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise PromptRegistryError(f"Failed to read MCP tracking metadata {path}: {e}") from e
        if not isinstance(raw, dict):
            raw = {}
        if not isinstance(raw.get("managedServers"), dict):
            raw["managedServers"] = {}
        raw.setdefault("version", TRACKING_VERSION)
        return raw

    def write_tracking(self, tracking: dict[str, Any]) -> None:
        tracking["lastUpdated"] = utc_now()
        write_json_atomic(self.location.tracking_path, tracking)

    def write(self, config: dict[str, Any], tracking: dict[str, Any]) -> None:
        """Write ``mcp.json`` and then the tracking file.

        If the tracking file cannot be written the previous ``mcp.json`` is put
        back, so no server is ever left in the config without a tracking entry.
        """
        path = self.location.config_path
        existed = path.exists()
        self.write_config(config)
        try:
            self.write_tracking(tracking)
        except Exception:
            if existed:
                self.restore_backup()
            else:
                path.unlink(missing_ok=True)
            raise

    def restore_backup(self) -> bool:
        backup = self.location.config_path.with_name(self.location.config_path.name + ".backup")
        if not backup.exists():
            return False
        shutil.copyfile(backup, self.location.config_path)
        return True


class McpServerInstaller:
    """Installs a bundle's ``mcpServers`` into the host's MCP configuration.

    Nothing here raises past ``install``/``uninstall``: failures come back in
    the result's ``errors`` list.
    """

    def __init__(self, resolver: PathResolver, *, overwrite: bool = False, skip_on_conflict: bool = False) -> None:
        self.resolver = resolver
        self.overwrite = overwrite
        self.skip_on_conflict = skip_on_conflict

    def location(self, scope: str) -> McpLocation:
        scope = parse_scope(scope)
        if scope == "user":
            base = self.resolver.config.host_user_path()
            return McpLocation(base / CONFIG_FILENAME, base / TRACKING_FILENAME)
        workspace = self.resolver.require_workspace()
        base = workspace / ".vscode"
        return McpLocation(
            base / CONFIG_FILENAME,
            base / TRACKING_FILENAME,
            workspace_root=workspace if scope == "repository" else None,
        )

    def install(
        self,
        bundle_id: str,
        version: str,
        install_path: Path,
        manifest: DeploymentManifest,
        scope: str,
        commit_mode: str | None = None,
    ) -> McpInstallResult:
        result = McpInstallResult()
        servers = manifest.mcp_servers
        if not servers:
            result.success = True
            return result

        if parse_scope(scope) == "repository" and self.resolver.workspace_root is None:
            result.success = True
            result.warnings.append("No workspace open, skipping MCP server installation")
            logger.warning("No workspace open, skipping MCP servers for %s", bundle_id)
            return result

        try:
            location = self.location(scope)
            store = McpConfigStore(location)
            bundle_path = location.workspace_root or install_path
            config = store.read_config()
            tracking = store.read_tracking()

            to_install: dict[str, dict[str, Any]] = {}
            conflicts: list[str] = []
            for server_name, definition in servers.items():
                name = prefixed_server_name(bundle_id, server_name)
                if name in config["servers"]:
                    if self.overwrite:
                        result.warnings.append(f"Overwriting existing server: {name}")
                    elif self.skip_on_conflict:
                        result.warnings.append(f"Skipping conflicting server: {name}")
                        continue
                    else:
                        conflicts.append(name)
                        continue
                to_install[name] = process_server_definition(
                    definition, bundle_id=bundle_id, bundle_version=version, bundle_path=bundle_path
                )
                tracking["managedServers"][name] = {
                    "bundleId": bundle_id,
                    "bundleVersion": version,
                    "originalName": server_name,
                    "originalConfig": definition,
                    "installedAt": utc_now(),
                    "scope": scope,
                }

            if conflicts:
                result.errors.append(f"Conflicts detected: {', '.join(conflicts)}")
                return result

            config["servers"].update(to_install)
            duplicates = disable_duplicates(config, tracking)
            store.write(config, tracking)
            if duplicates:
                result.warnings.append(f"Disabled {len(duplicates)} duplicate server(s): {', '.join(duplicates)}")

            if location.workspace_root is not None and commit_mode == "local-only":
                add_entries(location.workspace_root, [WORKSPACE_CONFIG_REL])

            result.installed_servers = list(to_install)
            result.servers_installed = len(to_install)
            result.success = True
            logger.info("Installed %d MCP server(s) for %s", result.servers_installed, bundle_id)
        except Exception as e:
            logger.error("Failed to install MCP servers for %s: %s", bundle_id, e)
            result.errors.append(str(e))
            result.success = False
        return result

    def uninstall(self, bundle_id: str, scope: str) -> McpUninstallResult:
        result = McpUninstallResult()
        if parse_scope(scope) != "user" and self.resolver.workspace_root is None:
            result.success = True
            return result
        try:
            location = self.location(scope)
            store = McpConfigStore(location)
            if not location.tracking_path.exists():
                result.success = True
                return result
            config = store.read_config()
            tracking = store.read_tracking()

            removed: list[str] = []
            dropped = 0
            for name, meta in list(tracking["managedServers"].items()):
                if not isinstance(meta, dict) or meta.get("bundleId") != bundle_id:
                    continue
                if name in config["servers"]:
                    del config["servers"][name]
                    removed.append(name)
                del tracking["managedServers"][name]
                dropped += 1

            if removed:
                store.write(config, tracking)
                logger.info("Removed %d MCP server(s) for %s", len(removed), bundle_id)
            elif dropped:
                # servers were already gone from mcp.json, only the tracking entries were stale
                store.write_tracking(tracking)

            if location.workspace_root is not None and not tracking["managedServers"]:
                remove_entries(location.workspace_root, [WORKSPACE_CONFIG_REL])

            result.removed_servers = removed
            result.servers_removed = len(removed)
            result.success = True
        except Exception as e:
            logger.error("Failed to uninstall MCP servers for %s: %s", bundle_id, e)
            result.errors.append(str(e))
        return result

    def list_servers(self, scope: str) -> list[dict[str, Any]]:
        location = self.location(scope)
        tracking = McpConfigStore(location).read_tracking()
        rows: list[dict[str, Any]] = []
        for name, meta in sorted(tracking["managedServers"].items()):
            if not isinstance(meta, dict):
                continue
            rows.append(
                {
                    "server": name,
                    "bundle_id": meta.get("bundleId"),
                    "bundle_version": meta.get("bundleVersion"),
                    "original_name": meta.get("originalName"),
                    "installed_at": meta.get("installedAt"),
                }
            )
        return rows
