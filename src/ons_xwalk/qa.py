"""
Quality assurance utilities for geospatial data.

CRS mismatches are resolved only by reprojection (to_crs), never by
overriding a CRS with set_crs. A missing CRS is a hard error.
"""

from typing import Any, Dict

import geopandas as gpd
import pandas as pd
from pyproj import CRS


# =============================================================================
# CRS Validation
# =============================================================================

class CRSError(Exception):
    """Raised when CRS validation fails."""
    pass


def assert_crs_not_none(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert that the GeoDataFrame has a CRS set.

    Args:
        gdf: GeoDataFrame to check
        context: Optional context string for error message

    Raises:
        CRSError: If CRS is None
    """
    if gdf.crs is None:
        msg = "GeoDataFrame has no CRS set"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def reproject_to_match(
    gdf: gpd.GeoDataFrame,
    target_crs: Any,
    context: str = "",
) -> gpd.GeoDataFrame:
    """
    Reproject a GeoDataFrame to the target CRS if it differs.

    Only uses to_crs(), never set_crs with override.

    Args:
        gdf: GeoDataFrame to reproject
        target_crs: Anything pyproj.CRS accepts (CRS, EPSG int, "EPSG:xxxx")
        context: Optional context string for error message

    Returns:
        The input unchanged when CRSs already match, else a reprojected copy

    Raises:
        CRSError: If source or target CRS is None
    """
    assert_crs_not_none(gdf, context)
    if target_crs is None:
        raise CRSError(f"Target CRS is None ({context})" if context else "Target CRS is None")

    target = CRS.from_user_input(target_crs)

    if gdf.crs.equals(target):
        return gdf

    return gdf.to_crs(target)


def get_crs_info(gdf: gpd.GeoDataFrame) -> Dict[str, Any]:
    """Summarize CRS and extent for logging."""
    if gdf.crs is None:
        return {"crs": None, "epsg": None, "n_features": len(gdf)}
    return {
        "crs": gdf.crs.to_string(),
        "epsg": gdf.crs.to_epsg(),
        "n_features": len(gdf),
        "bounds": [float(b) for b in gdf.total_bounds] if len(gdf) else None,
    }


# =============================================================================
# Geometry Validation
# =============================================================================

def assert_all_valid(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert all geometries are present and valid (non-self-intersecting).

    Raises:
        ValueError: If any geometry is missing or invalid
    """
    missing_mask = gdf.geometry.isna()
    invalid_mask = ~gdf.geometry.is_valid & ~missing_mask
    n_bad = int(missing_mask.sum() + invalid_mask.sum())
    if n_bad:
        msg = f"{n_bad} missing or invalid geometries found"
        if context:
            msg = f"{msg} ({context})"
        raise ValueError(msg)


def assert_polygonal(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert every geometry is a Polygon or MultiPolygon.

    Raises:
        ValueError: If any other geometry type is present
    """
    bad_types = set(gdf.geometry.geom_type.dropna()) - {"Polygon", "MultiPolygon"}
    if bad_types:
        msg = f"Expected polygonal geometries, found {sorted(bad_types)}"
        if context:
            msg = f"{msg} ({context})"
        raise ValueError(msg)


# =============================================================================
# Data Quality Summaries
# =============================================================================

def compute_na_rates(df: pd.DataFrame) -> dict[str, float]:
    """
    Compute NA rates for all columns in a DataFrame.

    Returns:
        Dictionary of column_name -> NA rate (0-1); empty frames report 0
    """
    if len(df) == 0:
        return {col: 0.0 for col in df.columns}
    return {col: float(rate) for col, rate in (df.isna().sum() / len(df)).items()}
