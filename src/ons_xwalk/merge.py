"""
Crosswalk merging.

Every missing postal code ends in exactly one outcome:
- matched:           geocoded and inside a neighbourhood
- outside_polygons:  geocoded but inside no neighbourhood
- not_geocoded:      the geocoder returned nothing
- invalid:           failed the validity predicate, never geocoded

Only matched codes are appended to the crosswalks; the rest go to the
ungeocodable ledger with a null ONS_ID.
"""

from typing import Iterable, List

import pandas as pd

from ons_xwalk.schemas import (
    LEDGER_CODE_COL,
    ONS_ID_COL,
    POSTALCODE_COL,
    WEIGHT_COL,
    align_id_dtype,
    coerce_whole_ids,
)

OUTCOME_MATCHED = "matched"
OUTCOME_OUTSIDE = "outside_polygons"
OUTCOME_NOT_GEOCODED = "not_geocoded"
OUTCOME_INVALID = "invalid"
OUTCOMES = [OUTCOME_MATCHED, OUTCOME_OUTSIDE, OUTCOME_NOT_GEOCODED, OUTCOME_INVALID]

CONFLICT_POLICIES = {"flag", "error"}


class CrosswalkConflictError(Exception):
    """Raised when a new row contradicts an existing crosswalk row."""
    pass


def classify_outcomes(
    missing: List[str],
    invalid: Iterable[str],
    geocoded: pd.DataFrame,
    assigned: pd.DataFrame,
    polygon_id_col: str = ONS_ID_COL,
) -> pd.DataFrame:
    """
    One row per missing code with its coordinates, neighbourhood and outcome.

    Args:
        missing: Unique missing codes
        invalid: Codes that failed the validity predicate
        geocoded: Geocoder output [postal_code, lat, lng]
        assigned: Spatial join output [postal_code, polygon_id_col, ...]
        polygon_id_col: Neighbourhood id column in assigned

    Returns:
        DataFrame[postal_code, lat, lng, ONS_ID, outcome]
    """
    invalid = set(invalid)

    base = pd.DataFrame({LEDGER_CODE_COL: pd.Series(missing, dtype="object")})
    geo = geocoded[[LEDGER_CODE_COL, "lat", "lng"]]
    out = base.merge(geo, on=LEDGER_CODE_COL, how="left", validate="one_to_one")

    ids = pd.DataFrame(assigned)[[LEDGER_CODE_COL, polygon_id_col]]
    if polygon_id_col != ONS_ID_COL:
        ids = ids.rename(columns={polygon_id_col: ONS_ID_COL})
    out = out.merge(ids, on=LEDGER_CODE_COL, how="left", validate="one_to_one")

    # Later assignments take precedence
    outcome = pd.Series(OUTCOME_MATCHED, index=out.index, dtype="object")
    outcome.loc[out[ONS_ID_COL].isna()] = OUTCOME_OUTSIDE
    outcome.loc[out["lat"].isna() | out["lng"].isna()] = OUTCOME_NOT_GEOCODED
    outcome.loc[out[LEDGER_CODE_COL].isin(invalid)] = OUTCOME_INVALID
    out["outcome"] = outcome

    return out


def outcome_counts(outcomes: pd.DataFrame) -> dict:
    """Number of codes per outcome, every outcome present."""
    counts = outcomes["outcome"].value_counts()
    return {name: int(counts.get(name, 0)) for name in OUTCOMES}


def build_sli_rows(outcomes: pd.DataFrame) -> pd.DataFrame:
    """Single-link additions: POSTALCODE, ONS_ID for matched codes."""
    matched = outcomes[outcomes["outcome"] == OUTCOME_MATCHED]
    rows = matched.rename(columns={LEDGER_CODE_COL: POSTALCODE_COL})[[POSTALCODE_COL, ONS_ID_COL]]
    return rows.reset_index(drop=True)


def build_weighted_rows(outcomes: pd.DataFrame) -> pd.DataFrame:
    """
    Weighted additions: POSTALCODE, ONS_ID, weight.

    A geocoded point lies in one neighbourhood, so the weight is always 1.
    """
    rows = build_sli_rows(outcomes)
    rows[WEIGHT_COL] = 1
    return rows


def build_ungeocodable_ledger(outcomes: pd.DataFrame) -> pd.DataFrame:
    """Codes that never reached a neighbourhood, with ONS_ID explicitly null."""
    unmatched = outcomes[outcomes["outcome"] != OUTCOME_MATCHED]
    ledger = pd.DataFrame({
        LEDGER_CODE_COL: unmatched[LEDGER_CODE_COL].to_numpy(dtype=object),
        ONS_ID_COL: pd.Series([None] * len(unmatched), dtype="object"),
    })
    return ledger


def append_rows(existing: pd.DataFrame, new_rows: pd.DataFrame) -> pd.DataFrame:
    """
    Append new crosswalk rows to an existing crosswalk.

    Plain concatenation: nothing is de-duplicated or overwritten, so the
    result has len(existing) + len(new_rows) rows. New ids take the
    existing crosswalk's dtype when that loses nothing, so integer ids
    already on file are never rewritten as floats.
    """
    if len(new_rows) == 0:
        return existing.reset_index(drop=True)
    if ONS_ID_COL in existing.columns and ONS_ID_COL in new_rows.columns:
        new_rows = new_rows.assign(
            **{ONS_ID_COL: align_id_dtype(new_rows[ONS_ID_COL], existing[ONS_ID_COL].dtype)}
        )
    return pd.concat([existing, new_rows], ignore_index=True)


def find_conflicts(existing: pd.DataFrame, new_rows: pd.DataFrame) -> pd.DataFrame:
    """
    New rows whose postal code already maps to a different neighbourhood.

    Returns:
        DataFrame[POSTALCODE, ONS_ID_existing, ONS_ID_new]
    """
    cols = [POSTALCODE_COL, f"{ONS_ID_COL}_existing", f"{ONS_ID_COL}_new"]
    if len(existing) == 0 or len(new_rows) == 0:
        return pd.DataFrame(columns=cols)

    left = existing[[POSTALCODE_COL, ONS_ID_COL]].drop_duplicates()
    right = new_rows[[POSTALCODE_COL, ONS_ID_COL]]
    both = left.merge(right, on=POSTALCODE_COL, suffixes=("_existing", "_new"))

    # 7 and 7.0 name the same neighbourhood
    existing_key = coerce_whole_ids(both[f"{ONS_ID_COL}_existing"]).astype(str)
    new_key = coerce_whole_ids(both[f"{ONS_ID_COL}_new"]).astype(str)
    differs = existing_key != new_key
    return both.loc[differs, cols].reset_index(drop=True)


def check_conflicts(
    existing: pd.DataFrame,
    new_rows: pd.DataFrame,
    policy: str = "flag",
    context: str = "",
    logger=None,
) -> pd.DataFrame:
    """
    Apply the conflict policy before appending.

    "flag" logs a warning and keeps both rows; "error" refuses the merge.

    Returns:
        The conflicts found (possibly empty)

    Raises:
        ValueError: On an unknown policy
        CrosswalkConflictError: If policy is "error" and conflicts exist
    """
    if policy not in CONFLICT_POLICIES:
        raise ValueError(f"Unknown conflict policy '{policy}'; expected one of {sorted(CONFLICT_POLICIES)}")

    conflicts = find_conflicts(existing, new_rows)
    if len(conflicts) == 0:
        return conflicts

    ctx = f" ({context})" if context else ""
    msg = f"{len(conflicts)} postal codes already mapped to a different neighbourhood{ctx}"
    if policy == "error":
        raise CrosswalkConflictError(msg)
    if logger:
        logger.warning(msg, extra={"conflicts": conflicts.head(20).to_dict("records")})
    return conflicts
