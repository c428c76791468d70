"""Move files into the freedesktop.org home trash."""

from __future__ import annotations

import os
import shutil
import time
from pathlib import Path
from urllib.parse import quote

import structlog

from filesense.paths import get_trash_dir

logger = structlog.get_logger(__name__)


def _unique_name(files_dir: Path, info_dir: Path, name: str) -> str:
    stem, dot, ext = name.partition(".")
    candidate = name
    n = 1
    while (files_dir / candidate).exists() or (
        info_dir / f"{candidate}.trashinfo"
    ).exists():
        n += 1
        candidate = f"{stem}.{n}{dot}{ext}" if dot else f"{stem}.{n}"
    return candidate


def move_to_trash(path: str | Path, trash_dir: Path | None = None) -> Path:
    """Move ``path`` into the trash and return its new location.

    Raises:
        FileNotFoundError: ``path`` does not exist.
        OSError: The move failed.
    """
    src = Path(os.path.abspath(os.fspath(path)))
    if not os.path.lexists(src):
        raise FileNotFoundError(src)

    trash = trash_dir or get_trash_dir()
    files_dir = trash / "files"
    info_dir = trash / "info"
    files_dir.mkdir(parents=True, exist_ok=True)
    info_dir.mkdir(parents=True, exist_ok=True)

    name = _unique_name(files_dir, info_dir, src.name)
    info_path = info_dir / f"{name}.trashinfo"
    info_path.write_text(
        "[Trash Info]\n"
        f"Path={quote(str(src))}\n"
        f"DeletionDate={time.strftime('%Y-%m-%dT%H:%M:%S')}\n",
        encoding="utf-8",
    )

    dest = files_dir / name
    try:
        shutil.move(str(src), str(dest))
    except OSError:
        info_path.unlink(missing_ok=True)
        raise
    logger.debug("trashed %s -> %s", src, dest)
    return dest
