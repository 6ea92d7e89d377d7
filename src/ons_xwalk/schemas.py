"""
Schema validation for crosswalk inputs and outputs.

Crosswalks are validated on read and on write, so a malformed upstream
file or a drifting output becomes an immediate local failure.

Keys are frozen:
- POSTALCODE is always a string (never coerced to a number).
- ONS_ID is the neighbourhood identifier and is non-null in crosswalks.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Set, Union

import geopandas as gpd
import numpy as np
import pandas as pd


# =============================================================================
# Schema Definition
# =============================================================================

@dataclass
class ColumnSpec:
    """Specification for a single column."""
    name: str
    dtype: Optional[str] = None  # e.g., "string", "float64", "geometry"
    nullable: bool = True
    always_null: bool = False
    unique: bool = False
    allowed_values: Optional[Set[Any]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None


@dataclass
class Schema:
    """Schema specification for a DataFrame or GeoDataFrame."""
    name: str
    columns: List[ColumnSpec]
    required_columns: List[str] = field(default_factory=list)
    min_rows: int = 0

    def __post_init__(self):
        if not self.required_columns:
            self.required_columns = [c.name for c in self.columns]

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


class SchemaError(Exception):
    """Raised when schema validation fails."""
    pass


# =============================================================================
# Column names
# =============================================================================

POSTALCODE_COL = "POSTALCODE"
ONS_ID_COL = "ONS_ID"
WEIGHT_COL = "weight"
LEDGER_CODE_COL = "postal_code"


def coerce_whole_ids(ids: pd.Series) -> pd.Series:
    """
    Nullable integer ids where no value would change.

    Vector formats often hand back integer neighbourhood ids as floats
    (7.0); those, and plain integer columns, become Int64. Anything else
    (strings, fractional floats) is returned unchanged.
    """
    if pd.api.types.is_bool_dtype(ids):
        return ids
    if pd.api.types.is_integer_dtype(ids):
        return ids.astype("Int64")
    if pd.api.types.is_float_dtype(ids):
        values = ids.dropna().astype("float64")
        if np.isfinite(values).all() and (values == values.round()).all():
            return ids.astype("Int64")
    return ids


def align_id_dtype(ids: pd.Series, target_dtype) -> pd.Series:
    """Cast ids to target_dtype when both are numeric and no value changes."""
    if not (pd.api.types.is_numeric_dtype(ids) and pd.api.types.is_numeric_dtype(target_dtype)):
        return ids
    if ids.isna().any():
        return ids
    cast = ids.astype(target_dtype)
    if (cast.astype("float64") != ids.astype("float64")).any():
        return ids
    return cast


# =============================================================================
# Predefined Schemas
# =============================================================================

# Single-link indicator crosswalk: one neighbourhood per postal code
CROSSWALK_SLI_SCHEMA = Schema(
    name="crosswalk_sli",
    columns=[
        ColumnSpec(POSTALCODE_COL, dtype="string", nullable=False),
        ColumnSpec(ONS_ID_COL, nullable=False),
    ],
)

# Long/weighted crosswalk: weights within a postal code sum to 1
CROSSWALK_WEIGHTED_SCHEMA = Schema(
    name="crosswalk_weighted",
    columns=[
        ColumnSpec(POSTALCODE_COL, dtype="string", nullable=False),
        ColumnSpec(ONS_ID_COL, nullable=False),
        ColumnSpec(WEIGHT_COL, nullable=False, min_value=0, max_value=1),
    ],
)

# Codes that never reached a neighbourhood
UNGEOCODABLE_SCHEMA = Schema(
    name="ungeocodable",
    columns=[
        ColumnSpec(LEDGER_CODE_COL, dtype="string", nullable=False),
        ColumnSpec(ONS_ID_COL, always_null=True),
    ],
)

# Raw geocoder output
GEOCODE_SCHEMA = Schema(
    name="geocode",
    columns=[
        ColumnSpec(LEDGER_CODE_COL, dtype="string", nullable=False),
        ColumnSpec("lat", dtype="float64", min_value=-90, max_value=90),
        ColumnSpec("lng", dtype="float64", min_value=-180, max_value=180),
    ],
)


# =============================================================================
# Validation Functions
# =============================================================================

def validate_column(
    df: pd.DataFrame,
    spec: ColumnSpec,
    context: str = "",
) -> List[str]:
    """
    Validate a single column against its specification.

    Args:
        df: DataFrame containing the column
        spec: Column specification
        context: Optional context for error messages

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    col_name = spec.name

    if col_name not in df.columns:
        errors.append(f"Missing column: {col_name}")
        return errors

    col = df[col_name]

    if spec.dtype is not None and len(col.dropna()) > 0:
        if spec.dtype == "geometry":
            if not isinstance(df, gpd.GeoDataFrame):
                errors.append(f"Expected GeoDataFrame for geometry column {col_name}")
        elif spec.dtype == "string":
            if not col.dropna().map(lambda v: isinstance(v, str)).all():
                errors.append(f"Column {col_name}: expected string values, got {col.dtype}")
        elif spec.dtype == "float64":
            if not pd.api.types.is_float_dtype(col):
                errors.append(f"Column {col_name}: expected float64, got {col.dtype}")

    if not spec.nullable and col.isna().any():
        na_count = col.isna().sum()
        errors.append(f"Column {col_name}: {na_count} NA values not allowed")

    if spec.always_null and col.notna().any():
        errors.append(f"Column {col_name}: {col.notna().sum()} non-null values, expected all null")

    if spec.unique and col.duplicated().any():
        dup_count = col.duplicated().sum()
        errors.append(f"Column {col_name}: {dup_count} duplicate values not allowed")

    if spec.allowed_values is not None:
        invalid = ~col.isin(spec.allowed_values) & col.notna()
        if invalid.any():
            invalid_vals = col[invalid].unique()[:5]
            errors.append(f"Column {col_name}: invalid values {list(invalid_vals)}")

    if spec.min_value is not None:
        below_min = (col < spec.min_value) & col.notna()
        if below_min.any():
            errors.append(f"Column {col_name}: values below min {spec.min_value}")

    if spec.max_value is not None:
        above_max = (col > spec.max_value) & col.notna()
        if above_max.any():
            errors.append(f"Column {col_name}: values above max {spec.max_value}")

    return errors


def validate_schema(
    df: Union[pd.DataFrame, gpd.GeoDataFrame],
    schema: Schema,
    context: str = "",
    raise_on_error: bool = True,
) -> List[str]:
    """
    Validate a DataFrame against a schema.

    Args:
        df: DataFrame to validate
        schema: Schema specification
        context: Optional context for error messages
        raise_on_error: If True, raise SchemaError on validation failure

    Returns:
        List of error messages (empty if valid)

    Raises:
        SchemaError: If raise_on_error=True and validation fails
    """
    errors = []
    ctx = f" ({context})" if context else ""

    if len(df) < schema.min_rows:
        errors.append(f"Expected at least {schema.min_rows} rows, got {len(df)}{ctx}")

    missing = set(schema.required_columns) - set(df.columns)
    if missing:
        errors.append(f"Missing required columns: {sorted(missing)}{ctx}")

    for col_spec in schema.columns:
        if col_spec.name in missing:
            continue
        errors.extend(validate_column(df, col_spec, context))

    if errors and raise_on_error:
        raise SchemaError(f"Schema validation failed for '{schema.name}':\n" + "\n".join(errors))

    return errors
