from __future__ import annotations

import io
import os
import secrets
import shutil
import tempfile
import time
import zipfile
from pathlib import Path
from urllib.parse import unquote, urlsplit

from .errors import ExtractionError
from .logging import get_logger

logger = get_logger("archive")

TEMP_PREFIX = "bundle-"


def make_temp_dir(root: Path | None = None) -> Path:
    """Create a fresh, uniquely named extraction directory."""
    base = root if root is not None else Path(tempfile.gettempdir()) / "prompt-registry"
    base.mkdir(parents=True, exist_ok=True)
    while True:
        path = base / f"{TEMP_PREFIX}{int(time.time() * 1000)}-{secrets.token_hex(4)}"
        try:
            path.mkdir()
        except FileExistsError:
            continue
        return path


def safe_extract_zip(zip_bytes: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(io.BytesIO(zip_bytes), "r") as zf:
        for info in zf.infolist():
            name = info.filename.replace("\\", "/")
            if not name:
                continue
            if name.startswith("/") or (len(name) > 1 and name[1] == ":"):
                raise ExtractionError(f"Archive contains an absolute path entry: {name!r}")
            target = (dest / name).resolve()
            base = dest.resolve()
            if not str(target).startswith(str(base) + os.sep) and target != base:
                raise ExtractionError(f"Archive contains an invalid path entry: {name!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


def extract_bundle(zip_bytes: bytes, *, temp_root: Path | None = None) -> Path:
    """Unpack ``zip_bytes`` into a new temp directory and return it.

    On failure the directory is removed before :class:`ExtractionError` is raised,
    so callers never receive a half-populated tree.
    """
    dest = make_temp_dir(temp_root)
    logger.debug("Extracting %d bytes into %s", len(zip_bytes), dest)
    try:
        safe_extract_zip(zip_bytes, dest)
    except ExtractionError:
        cleanup_temp_dir(dest)
        raise
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, OSError, RuntimeError, ValueError) as e:
        cleanup_temp_dir(dest)
        raise ExtractionError(f"Failed to extract bundle: {e}") from e
    return dest


def local_bundle_dir(url: str) -> Path | None:
    """Return the directory behind a ``file://`` URL, or None for other URLs."""
    parts = urlsplit(url)
    if parts.scheme != "file":
        return None
    path = Path(unquote(parts.path)).expanduser()
    if not path.is_dir():
        raise ExtractionError(f"Local bundle directory not found: {path}")
    return path


def cleanup_temp_dir(path: Path) -> bool:
    """Remove a temp directory. Failures are logged and reported, never raised."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning("Failed to clean up temp directory %s: %s", path, e)
        return False
    return True
