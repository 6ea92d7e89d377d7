"""
Input loading for the reconciliation pipeline.

Reads the candidate postal-code list, the two existing crosswalks and the
polygon datasets, validating each on the way in.
"""

from pathlib import Path
from typing import List, Union

import geopandas as gpd
import pandas as pd

from ons_xwalk.io_utils import read_df, read_gdf
from ons_xwalk.qa import assert_all_valid, assert_crs_not_none, assert_polygonal
from ons_xwalk.schemas import POSTALCODE_COL, Schema, validate_schema


def load_candidate_codes(
    path: Union[str, Path],
    sheet_name: Union[int, str] = 0,
) -> List[str]:
    """
    Load the candidate postal codes.

    The file has a single column and no header. Codes are read as strings.
    Leading and trailing whitespace is cell padding, not part of the code,
    so it is stripped; this is the only normalisation. Case and internal
    spacing are left alone. Blank cells are dropped, duplicates are kept.

    Args:
        path: .xlsx or .csv file
        sheet_name: Worksheet to read for Excel inputs

    Returns:
        Candidate codes in file order

    Raises:
        ValueError: For any other file type (legacy .xls included)
    """
    path = Path(path)
    kwargs = {"header": None, "dtype": str}
    if path.suffix.lower() == ".xlsx":
        kwargs["sheet_name"] = sheet_name

    df = read_df(path, **kwargs)
    if df.shape[1] == 0:
        return []

    codes = df.iloc[:, 0].dropna().astype(str).str.strip()
    return [c for c in codes if c]


def load_crosswalk(
    path: Union[str, Path],
    schema: Schema,
) -> pd.DataFrame:
    """
    Load an existing crosswalk CSV and validate it.

    Raises:
        SchemaError: If required columns are missing or have nulls
    """
    df = read_df(path, dtype={POSTALCODE_COL: str})
    validate_schema(df, schema, context=str(path))
    return df


def load_polygons(
    path: Union[str, Path],
    id_col: str,
    context: str = "",
) -> gpd.GeoDataFrame:
    """
    Load a polygon dataset with an identifier attribute.

    Raises:
        CRSError: If the file carries no CRS
        KeyError: If the id column is absent
        ValueError: If any geometry is missing, invalid or not polygonal
    """
    context = context or str(path)
    gdf = read_gdf(path)

    assert_crs_not_none(gdf, context)
    if id_col not in gdf.columns:
        raise KeyError(f"Missing id column '{id_col}' ({context}); have {list(gdf.columns)}")
    assert_all_valid(gdf, context)
    assert_polygonal(gdf, context)

    return gdf
