"""File path resolution using platformdirs.

Data lives in a platform-appropriate per-user directory:
  macOS: ~/Library/Application Support/abraxas/
  Linux: ~/.local/share/abraxas/
"""

from pathlib import Path

import platformdirs

APP_NAME = "abraxas"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB, key file)."""
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "abraxas.db"


def ensure_dirs_exist() -> None:
    """Create all required directories if they don't exist."""
    for d in [get_data_dir()]:
        d.mkdir(parents=True, exist_ok=True)
