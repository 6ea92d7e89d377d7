"""
Canonical path resolution for the ONS postal-code crosswalk project.

This module provides the single source of truth for all paths in the project.
Scripts import paths from here rather than building relative '../' paths.

- Detect root via `.project-root` (primary) and fallback markers
- Expose canonical paths: RAW_DIR, INTERIM_DIR, XWALK_DIR, etc.
"""

from pathlib import Path
from typing import Optional

# Markers to detect project root (in priority order)
ROOT_MARKERS = [".project-root", "pyproject.toml", ".git"]


def find_project_root(start_path: Optional[Path] = None) -> Path:
    """
    Find the project root by searching upward for marker files.

    Args:
        start_path: Starting directory for search. Defaults to this file's location.

    Returns:
        Path to project root directory.

    Raises:
        FileNotFoundError: If no root marker is found.
    """
    if start_path is None:
        start_path = Path(__file__).resolve().parent

    current = start_path

    while current != current.parent:
        for marker in ROOT_MARKERS:
            if (current / marker).exists():
                return current
        current = current.parent

    # Check root directory itself
    for marker in ROOT_MARKERS:
        if (current / marker).exists():
            return current

    raise FileNotFoundError(
        f"Could not find project root. Searched for markers {ROOT_MARKERS} "
        f"starting from {start_path}"
    )


# =============================================================================
# Canonical paths (resolved at import time)
# =============================================================================

PROJECT_ROOT = find_project_root()

# Config
CONFIG_DIR = PROJECT_ROOT / "configs"

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
RAW_DIR = DATA_DIR / "raw"
INTERIM_DIR = DATA_DIR / "interim"
PROCESSED_DIR = DATA_DIR / "processed"

# Processed subdirectories
XWALK_DIR = PROCESSED_DIR / "xwalk"
METADATA_DIR = PROCESSED_DIR / "metadata"

# Geocoder checkpoints live with the other intermediate products
GEOCODE_CACHE_DIR = INTERIM_DIR / "geocode"

# Logs
LOGS_DIR = PROJECT_ROOT / "logs"

# Source and scripts
SRC_DIR = PROJECT_ROOT / "src"
SCRIPTS_DIR = PROJECT_ROOT / "scripts"

# Tests
TESTS_DIR = PROJECT_ROOT / "tests"


def ensure_dirs_exist() -> None:
    """Create all canonical directories if they don't exist."""
    dirs = [
        CONFIG_DIR,
        RAW_DIR, INTERIM_DIR, GEOCODE_CACHE_DIR,
        XWALK_DIR, METADATA_DIR,
        LOGS_DIR,
    ]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)


if __name__ == "__main__":
    print(f"PROJECT_ROOT: {PROJECT_ROOT}")
    print(f"RAW_DIR:      {RAW_DIR}")
    print(f"XWALK_DIR:    {XWALK_DIR}")
    print(f"CONFIG_DIR:   {CONFIG_DIR}")
    print(f"LOGS_DIR:     {LOGS_DIR}")
