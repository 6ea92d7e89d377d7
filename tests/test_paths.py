"""
Tests for the paths module.

Verify that project root detection and canonical paths work correctly.
"""

import pytest
from pathlib import Path

from ons_xwalk.paths import (
    PROJECT_ROOT,
    find_project_root,
    RAW_DIR,
    INTERIM_DIR,
    PROCESSED_DIR,
    CONFIG_DIR,
    LOGS_DIR,
    XWALK_DIR,
    METADATA_DIR,
    GEOCODE_CACHE_DIR,
)


class TestProjectRoot:
    """Tests for project root detection."""

    def test_project_root_exists(self):
        """PROJECT_ROOT should be a valid directory."""
        assert PROJECT_ROOT.exists()
        assert PROJECT_ROOT.is_dir()

    def test_project_root_marker_exists(self):
        """The .project-root marker file should exist."""
        marker = PROJECT_ROOT / ".project-root"
        assert marker.exists(), "Missing .project-root marker file"

    def test_find_project_root_from_subdir(self):
        """find_project_root should work from any subdirectory."""
        subdir = PROJECT_ROOT / "src" / "ons_xwalk"
        found_root = find_project_root(subdir)
        assert found_root == PROJECT_ROOT

    def test_find_project_root_raises_on_invalid_path(self, tmp_path):
        """find_project_root should raise if no marker found."""
        with pytest.raises(FileNotFoundError):
            find_project_root(tmp_path)

    def test_find_project_root_in_tmp_tree(self, tmp_path):
        (tmp_path / ".project-root").touch()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_project_root(nested) == tmp_path


class TestCanonicalPaths:
    """Tests for canonical path definitions."""

    def test_raw_dir_under_data(self):
        assert RAW_DIR.name == "raw"
        assert "data" in str(RAW_DIR)

    def test_xwalk_dir_under_processed(self):
        """Crosswalk outputs live under processed/."""
        assert XWALK_DIR.parent == PROCESSED_DIR

    def test_geocode_cache_under_interim(self):
        assert GEOCODE_CACHE_DIR.parent == INTERIM_DIR

    def test_no_relative_path_components(self):
        """Canonical paths should not contain '..' components."""
        paths_to_check = [
            PROJECT_ROOT, RAW_DIR, INTERIM_DIR, PROCESSED_DIR,
            CONFIG_DIR, LOGS_DIR, XWALK_DIR, METADATA_DIR, GEOCODE_CACHE_DIR,
        ]
        for p in paths_to_check:
            assert ".." not in str(p), f"Path contains '..': {p}"

    def test_all_paths_absolute(self):
        paths_to_check = [
            PROJECT_ROOT, RAW_DIR, INTERIM_DIR, PROCESSED_DIR,
            CONFIG_DIR, LOGS_DIR, XWALK_DIR, METADATA_DIR, GEOCODE_CACHE_DIR,
        ]
        for p in paths_to_check:
            assert p.is_absolute(), f"Path is not absolute: {p}"


@pytest.mark.smoke
class TestPathsSmoke:
    """Smoke tests for paths module."""

    def test_import_succeeds(self):
        from ons_xwalk import paths
        assert paths.PROJECT_ROOT is not None

    def test_repo_layout(self):
        """Source tree and config should be where scripts expect them."""
        assert (PROJECT_ROOT / "src").exists()
        assert (CONFIG_DIR / "params.yml").exists()
