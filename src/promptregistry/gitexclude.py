from __future__ import annotations

import re
from pathlib import Path

from .logging import get_logger

logger = get_logger("gitexclude")

SECTION_HEADER = "# Prompt Registry (local)"

_NEXT_SECTION_RE = re.compile(r"\n#[^\n]+")


def exclude_path(workspace_root: Path) -> Path:
    return workspace_root / ".git" / "info" / "exclude"


def _split_section(content: str) -> tuple[str, list[str], str] | None:
    idx = content.find(SECTION_HEADER)
    if idx == -1:
        return None
    before = content[:idx]
    rest = content[idx + len(SECTION_HEADER):]
    m = _NEXT_SECTION_RE.search(rest)
    if m:
        section, after = rest[: m.start()], rest[m.start():]
    else:
        section, after = rest, ""
    entries = [line.strip() for line in section.split("\n") if line.strip()]
    return before, entries, after


def _render(before: str, entries: list[str], after: str) -> str:
    head = before.rstrip()
    if not entries:
        return (head + after).strip() + "\n" if (head + after).strip() else ""
    body = (head + "\n\n" if head else "") + SECTION_HEADER + "\n" + "\n".join(entries) + "\n" + after
    return body.strip() + "\n"


def read_entries(workspace_root: Path) -> list[str]:
    path = exclude_path(workspace_root)
    if not path.is_file():
        return []
    parsed = _split_section(path.read_text(encoding="utf-8"))
    return parsed[1] if parsed else []


def add_entries(workspace_root: Path, paths: list[str]) -> bool:
    """Add ``paths`` to our section of ``.git/info/exclude``. No-op outside a git checkout."""
    if not (workspace_root / ".git").exists():
        logger.warning("No .git directory in %s, skipping git exclude", workspace_root)
        return False
    path = exclude_path(workspace_root)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        content = path.read_text(encoding="utf-8") if path.exists() else ""
        parsed = _split_section(content)
        if parsed is None:
            before, entries, after = content, [], ""
        else:
            before, entries, after = parsed
        added = False
        for p in paths:
            if p not in entries:
                entries.append(p)
                added = True
        if not added:
            return False
        path.write_text(_render(before, entries, after), encoding="utf-8")
    except OSError as e:
        logger.warning("Failed to update git exclude: %s", e)
        return False
    logger.debug("Added %s to git exclude", ", ".join(paths))
    return True


def remove_entries(workspace_root: Path, paths: list[str]) -> bool:
    path = exclude_path(workspace_root)
    if not (workspace_root / ".git").exists() or not path.is_file():
        return False
    try:
        parsed = _split_section(path.read_text(encoding="utf-8"))
        if parsed is None:
            return False
        before, entries, after = parsed
        remaining = [e for e in entries if e not in paths]
        if len(remaining) == len(entries):
            return False
        path.write_text(_render(before, remaining, after), encoding="utf-8")
    except OSError as e:
        logger.warning("Failed to update git exclude: %s", e)
        return False
    logger.debug("Removed %s from git exclude", ", ".join(paths))
    return True
