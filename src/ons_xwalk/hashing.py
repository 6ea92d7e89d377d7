"""
Hashing utilities for reproducibility.

Each crosswalk output has a metadata sidecar with:
  - input file hashes
  - config digest
  - code version (git commit if available)
  - runtime library versions
  - timestamp + run_id
"""

import hashlib
import json
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ons_xwalk.io_utils import atomic_write_json, read_json
from ons_xwalk.logging_utils import get_versions
from ons_xwalk.paths import METADATA_DIR


# =============================================================================
# File Hashing
# =============================================================================

def hash_file(path: Union[str, Path], algorithm: str = "sha256") -> str:
    """
    Compute hash of a file.

    Args:
        path: Path to file
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Hex digest of file hash
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Cannot hash non-existent file: {path}")

    h = hashlib.new(algorithm)

    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)

    return h.hexdigest()


def hash_dict(d: Dict[str, Any], algorithm: str = "sha256") -> str:
    """Compute hash of a dictionary (via sorted-key JSON serialization)."""
    s = json.dumps(d, sort_keys=True, default=str)
    h = hashlib.new(algorithm)
    h.update(s.encode("utf-8"))
    return h.hexdigest()


# =============================================================================
# Git Version Info
# =============================================================================

def get_git_commit() -> Optional[str]:
    """
    Get current git commit hash.

    Returns:
        Commit hash or None if not in a git repo
    """
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        pass
    return None


# =============================================================================
# Metadata Sidecar
# =============================================================================

def create_metadata_sidecar(
    output_path: Union[str, Path],
    inputs: Dict[str, str],
    config: Dict[str, Any],
    run_id: str,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Create a metadata sidecar for an output file.

    Args:
        output_path: Path to the output file
        inputs: Dictionary mapping input names to file paths
        config: Configuration used for this run
        run_id: Unique run identifier
        extra: Additional metadata to include

    Returns:
        Metadata dictionary
    """
    output_path = Path(output_path)

    input_hashes = {}
    for name, path in inputs.items():
        path = Path(path)
        if path.exists():
            input_hashes[name] = {
                "path": str(path),
                "hash": hash_file(path),
            }
        else:
            input_hashes[name] = {
                "path": str(path),
                "hash": None,
                "missing": True,
            }

    metadata = {
        "output_file": str(output_path),
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "inputs": input_hashes,
        "config_digest": hash_dict(config),
        "config": config,
        "git_commit": get_git_commit(),
        "versions": get_versions(),
    }

    if extra:
        metadata["extra"] = extra

    return metadata


def write_metadata_sidecar(
    output_path: Union[str, Path],
    inputs: Dict[str, str],
    config: Dict[str, Any],
    run_id: str,
    extra: Optional[Dict[str, Any]] = None,
    metadata_dir: Optional[Path] = None,
) -> Path:
    """
    Write a metadata sidecar file for an output.

    Returns:
        Path to the written sidecar file
    """
    if metadata_dir is None:
        metadata_dir = METADATA_DIR

    output_path = Path(output_path)
    metadata = create_metadata_sidecar(output_path, inputs, config, run_id, extra)

    sidecar_path = Path(metadata_dir) / f"{output_path.stem}_metadata.json"
    atomic_write_json(metadata, sidecar_path)

    return sidecar_path


def read_metadata_sidecar(
    output_path: Union[str, Path],
    metadata_dir: Optional[Path] = None,
) -> Optional[Dict[str, Any]]:
    """Read the metadata sidecar for an output file, or None if absent."""
    if metadata_dir is None:
        metadata_dir = METADATA_DIR

    sidecar_path = Path(metadata_dir) / f"{Path(output_path).stem}_metadata.json"
    if sidecar_path.exists():
        return read_json(sidecar_path)
    return None
