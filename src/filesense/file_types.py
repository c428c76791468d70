"""File kind classification and path exclusion policy."""

from __future__ import annotations

import fnmatch
import os
from collections.abc import Iterable
from enum import IntEnum


class FileKind(IntEnum):
    """Kind of a file, derived from its extension.

    Values are persisted in the ``file_type`` column; never renumber.
    """

    UNKNOWN = 0
    TEXT = 1
    CODE = 2
    DOCUMENT = 3
    IMAGE = 4
    AUDIO = 5
    VIDEO = 6
    ARCHIVE = 7

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> FileKind:
        try:
            return cls[label.upper()]
        except KeyError:
            raise ValueError(f"unknown file kind: {label!r}") from None


_EXTENSIONS: dict[FileKind, tuple[str, ...]] = {
    FileKind.TEXT: ("txt", "md", "rst", "org"),
    FileKind.CODE: (
        "c", "h", "cpp", "hpp", "py", "js", "ts", "go", "rs", "java",
        "swift", "rb", "sh", "json", "yaml", "yml", "xml", "html", "css",
    ),
    FileKind.DOCUMENT: (
        "pdf", "doc", "docx", "odt", "rtf", "xls", "xlsx", "ppt", "pptx",
    ),
    FileKind.IMAGE: (
        "jpg", "jpeg", "png", "gif", "bmp", "svg", "webp", "ico", "tiff",
        "tif", "heic",
    ),
    FileKind.AUDIO: ("mp3", "wav", "flac", "aac", "ogg", "m4a"),
    FileKind.VIDEO: ("mp4", "mkv", "avi", "mov", "webm", "wmv"),
    FileKind.ARCHIVE: ("zip", "tar", "gz", "bz2", "xz", "7z", "rar", "dmg"),
}  # fmt: skip

EXTENSION_KINDS: dict[str, FileKind] = {
    ext: kind for kind, exts in _EXTENSIONS.items() for ext in exts
}

# kinds whose content is fed to the text embedding model
EMBEDDABLE_KINDS = frozenset({FileKind.TEXT, FileKind.CODE})

# formats the visual model accepts
VISUAL_IMAGE_EXTENSIONS = frozenset(
    {"jpg", "jpeg", "png", "gif", "bmp", "webp", "tiff", "heic"}
)

DEFAULT_EXCLUDE_PATTERNS: tuple[str, ...] = (
    "node_modules",
    ".git",
    ".svn",
    ".hg",
    "__pycache__",
    "*.pyc",
    "*.o",
    "*.a",
    "*.so",
    "*.dylib",
    ".DS_Store",
    "Thumbs.db",
    "*.log",
    "*.tmp",
    "*.swp",
)

_GLOB_CHARS = frozenset("*?[")


def extension_of(path: str) -> str:
    """Lowercase extension without the dot, or "" if there is none."""
    name = os.path.basename(path)
    dot = name.rfind(".")
    if dot <= 0:
        return ""
    return name[dot + 1 :].lower()


def kind_for_path(path: str) -> FileKind:
    return EXTENSION_KINDS.get(extension_of(path), FileKind.UNKNOWN)


def is_visual_image(path: str) -> bool:
    return extension_of(path) in VISUAL_IMAGE_EXTENSIONS


def is_hidden_name(name: str) -> bool:
    return name.startswith(".") and name not in (".", "..")


def matches_component(component: str, pattern: str) -> bool:
    """Match one path component against a substring or glob pattern."""
    if _GLOB_CHARS.intersection(pattern):
        return fnmatch.fnmatchcase(component, pattern)
    return pattern in component


def relative_components(path: str, root: str | None = None) -> list[str]:
    """Path components of ``path`` below ``root`` (all of them without one)."""
    if root is not None:
        rel = os.path.relpath(path, root)
        if rel == os.curdir:
            return []
        if not rel.startswith(os.pardir):
            path = rel
    return [c for c in path.split(os.sep) if c]


def is_excluded(
    path: str,
    patterns: Iterable[str],
    root: str | None = None,
    include_hidden: bool = False,
) -> bool:
    """Return True if any component of ``path`` below ``root`` is excluded.

    A component is excluded when any pattern matches it, or when it starts
    with a dot and hidden files are not being indexed.
    """
    patterns = tuple(patterns)
    for component in relative_components(path, root):
        if not include_hidden and is_hidden_name(component):
            return True
        for pattern in patterns:
            if matches_component(component, pattern):
                return True
    return False
