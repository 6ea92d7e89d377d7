"""
Point-in-polygon assignment of geocoded postal codes to neighbourhoods.

- points are reprojected to the polygon CRS (never the reverse)
- a point on a shared boundary counts as inside (predicate "intersects")
- when several polygons contain a point, the smallest polygon wins (area
  measured in an equal-area CRS), ties broken by the lowest id as a string
- whole-number float ids (7.0) come back as nullable integers
- points inside no polygon keep a null identifier
"""

from typing import Dict, Optional, Tuple

import geopandas as gpd
import pandas as pd

from ons_xwalk.io_utils import read_yaml
from ons_xwalk.paths import CONFIG_DIR
from ons_xwalk.qa import assert_crs_not_none, reproject_to_match
from ons_xwalk.schemas import ONS_ID_COL, coerce_whole_ids

WGS84 = "EPSG:4326"
# World Cylindrical Equal Area; polygon areas for tie-breaks are compared here
EQUAL_AREA_CRS = "EPSG:6933"


class SpatialJoinError(Exception):
    """Raised when spatial join inputs are unusable."""
    pass


def _load_join_config() -> dict:
    """Load spatial join configuration from params.yml."""
    params_path = CONFIG_DIR / "params.yml"
    if not params_path.exists():
        return {}
    return read_yaml(params_path).get("spatial_join", {})


def geocodes_to_points(
    df: pd.DataFrame,
    lat_col: str = "lat",
    lng_col: str = "lng",
    crs: str = WGS84,
) -> gpd.GeoDataFrame:
    """
    Build point geometries from geocoder output.

    Rows lacking either coordinate are dropped; they never take part in
    the spatial join.
    """
    located = df.dropna(subset=[lat_col, lng_col]).copy()
    return gpd.GeoDataFrame(
        located,
        geometry=gpd.points_from_xy(located[lng_col], located[lat_col]),
        crs=crs,
    )


def assign_neighbourhoods(
    points: gpd.GeoDataFrame,
    polygons: gpd.GeoDataFrame,
    polygon_id_col: str = ONS_ID_COL,
    predicate: Optional[str] = None,
) -> Tuple[gpd.GeoDataFrame, Dict]:
    """
    Assign each point the identifier of the polygon containing it.

    Args:
        points: Point GeoDataFrame
        polygons: Neighbourhood polygons with polygon_id_col
        polygon_id_col: Identifier column on polygons
        predicate: sjoin predicate; defaults to config, then "intersects"

    Returns:
        Tuple of (points in the polygon CRS with polygon_id_col added,
        one row per input point; stats dictionary)

    Raises:
        SpatialJoinError: If either input is not a GeoDataFrame, points are
                          not all Points, or the id column is missing
        CRSError: If either input has no CRS
    """
    if not isinstance(points, gpd.GeoDataFrame):
        raise SpatialJoinError(f"points must be a GeoDataFrame, got {type(points).__name__}")
    if not isinstance(polygons, gpd.GeoDataFrame):
        raise SpatialJoinError(f"polygons must be a GeoDataFrame, got {type(polygons).__name__}")
    if polygon_id_col not in polygons.columns:
        raise SpatialJoinError(f"polygons missing id column '{polygon_id_col}'")

    geom_types = set(points.geometry.geom_type.dropna())
    if geom_types - {"Point"} or points.geometry.isna().any():
        raise SpatialJoinError(f"points must all be Point geometries, found {sorted(geom_types)}")

    if predicate is None:
        predicate = _load_join_config().get("predicate", "intersects")

    assert_crs_not_none(points, "points input")
    assert_crs_not_none(polygons, "polygons input")

    # Points follow the polygons, never the reverse
    pts = reproject_to_match(points, polygons.crs, "points").copy()
    if polygon_id_col in pts.columns:
        pts = pts.drop(columns=[polygon_id_col])
    pts["_pt_idx"] = range(len(pts))

    stats = {
        "total_points": len(pts),
        "matched": 0,
        "unmatched": 0,
        "multi_match": 0,
        "predicate": predicate,
        "crs": polygons.crs.to_string(),
    }

    if len(pts) == 0:
        result = pts.drop(columns=["_pt_idx"])
        result[polygon_id_col] = pd.Series(dtype="object")
        return result, stats

    polys = polygons[[polygon_id_col, "geometry"]].reset_index(drop=True)

    joined = gpd.sjoin(
        pts[["_pt_idx", "geometry"]],
        polys,
        how="left",
        predicate=predicate,
    )
    hits = joined.loc[joined["index_right"].notna(), ["_pt_idx", polygon_id_col, "index_right"]]

    multi_mask = hits["_pt_idx"].duplicated(keep=False)
    n_multi = int(hits.loc[multi_mask, "_pt_idx"].nunique())
    if n_multi:
        right_idx = hits["index_right"].astype(int).to_numpy()
        areas = polys.geometry.to_crs(EQUAL_AREA_CRS).area.to_numpy()
        hits = hits.assign(
            _area=areas[right_idx],
            _id_str=coerce_whole_ids(hits[polygon_id_col]).astype(str),
        )
        hits = hits.sort_values(["_pt_idx", "_area", "_id_str"]).drop_duplicates("_pt_idx")

    assigned = hits.set_index("_pt_idx")[polygon_id_col]
    result = pts.copy()
    result[polygon_id_col] = result["_pt_idx"].map(assigned)
    if pd.api.types.is_integer_dtype(coerce_whole_ids(polygons[polygon_id_col])):
        result[polygon_id_col] = result[polygon_id_col].astype("Int64")
    result = result.drop(columns=["_pt_idx"])

    n_matched = int(result[polygon_id_col].notna().sum())
    stats["matched"] = n_matched
    stats["unmatched"] = len(result) - n_matched
    stats["multi_match"] = n_multi

    return result, stats


def log_join_stats(stats: Dict, logger=None) -> None:
    """
    Log spatial join statistics.

    Args:
        stats: Statistics dictionary from assign_neighbourhoods
        logger: Optional logger instance (uses print if None)
    """
    msg = (
        f"Spatial join stats: "
        f"{stats['total_points']} total, "
        f"{stats['matched']} matched, "
        f"{stats['unmatched']} outside all polygons"
    )
    if stats.get("multi_match"):
        msg += f" | {stats['multi_match']} in several polygons (smallest area kept)"

    if logger:
        logger.info(msg, extra={"join_stats": stats})
    else:
        print(msg)
