"""Default on-disk locations, derived from the user's home directory."""

from pathlib import Path

APP_NAME = "filesense"
DEFAULT_DB_NAME = "index.db"


def get_cache_dir() -> Path:
    return Path.home() / ".cache" / APP_NAME


def default_database_path(create: bool = True) -> Path:
    """Return the default index database path.

    Args:
        create: Create the parent directory if it does not exist.
    """
    path = get_cache_dir() / DEFAULT_DB_NAME
    if create:
        path.parent.mkdir(parents=True, exist_ok=True)
    return path


def get_trash_dir() -> Path:
    """Return the freedesktop.org home trash directory."""
    return Path.home() / ".local" / "share" / "Trash"
