from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path, user_data_path

APP_NAME = "prompt-registry"
DEFAULT_TIMEOUT_S = 30.0

_ENV_OVERRIDES = {
    "workspace_root": "PROMPT_REGISTRY_WORKSPACE",
    "workspace_storage_dir": "PROMPT_REGISTRY_WORKSPACE_STORAGE",
    "global_storage_dir": "PROMPT_REGISTRY_GLOBAL_STORAGE",
    "host_user_dir": "PROMPT_REGISTRY_HOST_USER_DIR",
    "skills_dir": "PROMPT_REGISTRY_SKILLS_DIR",
    "timeout_s": "PROMPT_REGISTRY_TIMEOUT_S",
}


@dataclass(frozen=True)
class Config:
    global_storage_dir: str | None = None  # defaults to the platform user data dir
    workspace_storage_dir: str | None = None
    workspace_root: str | None = None
    host_user_dir: str | None = None  # parent of the host's flat "prompts" directory
    skills_dir: str | None = None  # defaults to ~/.copilot/skills
    mirror_claude_skills: bool = False
    timeout_s: float = DEFAULT_TIMEOUT_S

    def global_storage_path(self) -> Path:
        if self.global_storage_dir:
            return Path(self.global_storage_dir).expanduser()
        return user_data_path(APP_NAME)

    def workspace_storage_path(self) -> Path | None:
        return Path(self.workspace_storage_dir).expanduser() if self.workspace_storage_dir else None

    def workspace_path(self) -> Path | None:
        return Path(self.workspace_root).expanduser() if self.workspace_root else None

    def host_user_path(self) -> Path:
        if self.host_user_dir:
            return Path(self.host_user_dir).expanduser()
        return user_config_path("Code") / "User"

    def skills_path(self) -> Path:
        if self.skills_dir:
            return Path(self.skills_dir).expanduser()
        return Path.home() / ".copilot" / "skills"


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("PROMPT_REGISTRY_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def apply_env(cfg: Config, environ: dict[str, str] | None = None) -> Config:
    """Overlay ``PROMPT_REGISTRY_*`` environment variables onto a loaded config."""
    env = os.environ if environ is None else environ
    updates: dict[str, Any] = {}
    for key, var in _ENV_OVERRIDES.items():
        value = env.get(var)
        if not value:
            continue
        updates[key] = float(value) if key == "timeout_s" else value
    return replace(cfg, **updates) if updates else cfg


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path
