from __future__ import annotations

import errno
import hashlib
import json
import os
import shutil
import stat
from pathlib import Path
from typing import Any, Callable

from .errors import InstallationCancelled, PromptRegistryError
from .logging import get_logger
from .models import PathExistsResult

logger = get_logger("materialize")

# Directory names that are never removed wholesale.
PROTECTED_DIR_NAMES = frozenset({".github"})

ConfirmOverwrite = Callable[[str, Path, bool], bool]


def check_path_exists(path: Path) -> PathExistsResult:
    """Three-state existence check that can see broken symlinks.

    ``os.path.exists`` follows links and reports a dangling one as absent; here it
    comes back as ``exists=True, is_symbolic_link=True, is_broken=True``.
    """
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return PathExistsResult(exists=False, is_symbolic_link=False, is_broken=False)

    if not stat.S_ISLNK(st.st_mode):
        return PathExistsResult(exists=True, is_symbolic_link=False, is_broken=False)

    try:
        os.stat(path)
    except OSError as e:
        if e.errno not in (errno.ENOENT, errno.ENOTDIR, errno.ELOOP):
            raise
        return PathExistsResult(exists=True, is_symbolic_link=True, is_broken=True)
    return PathExistsResult(exists=True, is_symbolic_link=True, is_broken=False)


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def _normalized(data: bytes) -> bytes:
    return data.replace(b"\r\n", b"\n")


def same_content(a: Path, b: Path) -> bool:
    """Byte equality after CRLF to LF normalization."""
    return _normalized(a.read_bytes()) == _normalized(b.read_bytes())


def same_tree(a: Path, b: Path) -> bool:
    """True when two directory trees hold the same relative files with the same content."""
    files_a = {p.relative_to(a) for p in a.rglob("*") if p.is_file()}
    files_b = {p.relative_to(b) for p in b.rglob("*") if p.is_file()}
    if files_a != files_b:
        return False
    return all(same_content(a / rel, b / rel) for rel in files_a)


def copy_tree(src: Path, dest: Path) -> None:
    """Mirror ``src`` into ``dest`` one directory at a time."""
    dest.mkdir(parents=True, exist_ok=True)
    with os.scandir(src) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        target = dest / entry.name
        if entry.is_dir():
            copy_tree(Path(entry.path), target)
        else:
            shutil.copy2(entry.path, target)


def copy_skill_folders(src: Path, dest: Path) -> list[str]:
    """Copy only the top-level directories of ``src`` (one per skill) into ``dest``."""
    dest.mkdir(parents=True, exist_ok=True)
    copied: list[str] = []
    for child in sorted(src.iterdir()):
        if not child.is_dir():
            continue
        target = dest / child.name
        if check_path_exists(target).exists:
            remove_tree(target)
        copy_tree(child, target)
        copied.append(child.name)
    return copied


def remove_tree(path: Path) -> bool:
    """Remove ``path`` without ever following a symlink. Returns False if it was absent.

    A symlink (at the top or anywhere below) is unlinked; real directories are
    emptied and then removed.
    """
    if path.name in PROTECTED_DIR_NAMES:
        raise PromptRegistryError(f"Refusing to remove shared directory: {path}")
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return False
    if not stat.S_ISDIR(st.st_mode):
        os.unlink(path)
        return True
    _empty_dir(path)
    os.rmdir(path)
    return True


def _empty_dir(path: Path) -> None:
    with os.scandir(path) as it:
        entries = list(it)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            _empty_dir(Path(entry.path))
            os.rmdir(entry.path)
        else:
            os.unlink(entry.path)


def link_or_copy_dir(source: Path, target: Path) -> str:
    """Symlink ``target`` to ``source``; copy the tree when linking is not possible."""
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.symlink(source.resolve(), target, target_is_directory=True)
        return "symlink"
    except (OSError, NotImplementedError) as e:
        logger.debug("Symlink %s -> %s failed (%s), copying instead", target, source, e)
    copy_tree(source, target)
    return "copy"


def link_or_copy_file(source: Path, target: Path) -> str:
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.symlink(source.resolve(), target)
        return "symlink"
    except (OSError, NotImplementedError) as e:
        logger.debug("Symlink %s -> %s failed (%s), copying instead", target, source, e)
    shutil.copyfile(source, target)
    return "copy"


def clear_skill_target(target: Path, confirm_overwrite: ConfirmOverwrite | None) -> None:
    """Make room for a skill directory at ``target``.

    Broken symlinks go without asking. Anything else needs ``confirm_overwrite``
    to return True, otherwise :class:`InstallationCancelled` is raised.
    """
    state = check_path_exists(target)
    if not state.exists:
        return
    if state.is_broken:
        logger.info("Removing broken skill symlink %s", target)
        os.unlink(target)
        return
    if confirm_overwrite is None or not confirm_overwrite(target.name, target, state.is_symbolic_link):
        raise InstallationCancelled("Installation cancelled")
    remove_tree(target)


def install_skill_symlink(source_dir: Path, target: Path, confirm_overwrite: ConfirmOverwrite | None = None) -> str:
    """Install a live local skill by linking to its source directory."""
    clear_skill_target(target, confirm_overwrite)
    mode = link_or_copy_dir(source_dir, target)
    logger.info("Installed skill %s (%s)", target.name, mode)
    return mode


def uninstall_skill_symlink(target: Path) -> bool:
    state = check_path_exists(target)
    if not state.exists:
        return False
    if state.is_symbolic_link:
        os.unlink(target)
        return True
    return remove_tree(target)


def remove_empty_dir(path: Path) -> bool:
    try:
        next(path.iterdir())
    except StopIteration:
        path.rmdir()
        return True
    except FileNotFoundError:
        return False
    return False
