"""
Tests for outcome classification and crosswalk merging.
"""

import numpy as np
import pandas as pd
import pytest

from ons_xwalk.merge import (
    OUTCOME_INVALID,
    OUTCOME_MATCHED,
    OUTCOME_NOT_GEOCODED,
    OUTCOME_OUTSIDE,
    CrosswalkConflictError,
    append_rows,
    build_sli_rows,
    build_ungeocodable_ledger,
    build_weighted_rows,
    check_conflicts,
    classify_outcomes,
    find_conflicts,
    outcome_counts,
)


@pytest.fixture
def outcomes():
    """One code in each outcome bucket."""
    missing = ["K1H7S5", "ZZ9ZZ9", "K1V1N2", "K1H7S"]
    geocoded = pd.DataFrame({
        "postal_code": ["K1H7S5", "ZZ9ZZ9", "K1V1N2"],
        "lat": [45.38, 43.65, np.nan],
        "lng": [-75.68, -79.38, np.nan],
    })
    assigned = pd.DataFrame({
        "postal_code": ["K1H7S5", "ZZ9ZZ9"],
        "ONS_ID": pd.array([7, pd.NA], dtype="Int64"),
    })
    return classify_outcomes(missing, ["K1H7S"], geocoded, assigned)


@pytest.fixture
def sli():
    return pd.DataFrame({"POSTALCODE": ["K2P1L4", "K1A0B1"], "ONS_ID": [8, 7]})


@pytest.fixture
def weighted():
    return pd.DataFrame({
        "POSTALCODE": ["K2P1L4", "K2P1L4", "K1A0B1"],
        "ONS_ID": [8, 7, 7],
        "weight": [0.6, 0.4, 1.0],
    })


class TestClassifyOutcomes:

    def test_each_code_in_exactly_one_bucket(self, outcomes):
        assert outcomes["postal_code"].tolist() == ["K1H7S5", "ZZ9ZZ9", "K1V1N2", "K1H7S"]
        assert outcomes["outcome"].tolist() == [
            OUTCOME_MATCHED,
            OUTCOME_OUTSIDE,
            OUTCOME_NOT_GEOCODED,
            OUTCOME_INVALID,
        ]

    def test_counts(self, outcomes):
        assert outcome_counts(outcomes) == {
            "matched": 1,
            "outside_polygons": 1,
            "not_geocoded": 1,
            "invalid": 1,
        }

    def test_counts_include_empty_buckets(self):
        out = classify_outcomes(
            [],
            [],
            pd.DataFrame(columns=["postal_code", "lat", "lng"]),
            pd.DataFrame(columns=["postal_code", "ONS_ID"]),
        )
        assert outcome_counts(out) == {
            "matched": 0,
            "outside_polygons": 0,
            "not_geocoded": 0,
            "invalid": 0,
        }

    def test_custom_polygon_id_col(self):
        geocoded = pd.DataFrame({"postal_code": ["K1H7S5"], "lat": [45.38], "lng": [-75.68]})
        assigned = pd.DataFrame({"postal_code": ["K1H7S5"], "NH_ID": [7]})
        out = classify_outcomes(["K1H7S5"], [], geocoded, assigned, polygon_id_col="NH_ID")
        assert out.loc[0, "ONS_ID"] == 7
        assert out.loc[0, "outcome"] == OUTCOME_MATCHED


class TestBuildRows:

    def test_sli_rows(self, outcomes):
        rows = build_sli_rows(outcomes)
        assert list(rows.columns) == ["POSTALCODE", "ONS_ID"]
        assert rows.to_dict("records") == [{"POSTALCODE": "K1H7S5", "ONS_ID": 7}]

    def test_weighted_rows_have_unit_weight(self, outcomes):
        rows = build_weighted_rows(outcomes)
        assert list(rows.columns) == ["POSTALCODE", "ONS_ID", "weight"]
        assert (rows["weight"] == 1).all()

    def test_ledger(self, outcomes):
        ledger = build_ungeocodable_ledger(outcomes)
        assert list(ledger.columns) == ["postal_code", "ONS_ID"]
        assert ledger["postal_code"].tolist() == ["ZZ9ZZ9", "K1V1N2", "K1H7S"]
        assert ledger["ONS_ID"].isna().all()

    def test_ledger_plus_matched_equals_missing(self, outcomes):
        assert len(build_ungeocodable_ledger(outcomes)) + len(build_sli_rows(outcomes)) == len(outcomes)


class TestAppendRows:

    def test_row_count(self, sli, outcomes):
        new_rows = build_sli_rows(outcomes)
        augmented = append_rows(sli, new_rows)
        assert len(augmented) == len(sli) + len(new_rows)
        assert augmented["POSTALCODE"].tolist() == ["K2P1L4", "K1A0B1", "K1H7S5"]

    def test_no_dedup(self, sli):
        dup = pd.DataFrame({"POSTALCODE": ["K2P1L4"], "ONS_ID": [8]})
        assert len(append_rows(sli, dup)) == 3

    def test_empty_additions_leave_crosswalk_unchanged(self, sli):
        empty = pd.DataFrame(columns=["POSTALCODE", "ONS_ID"])
        pd.testing.assert_frame_equal(append_rows(sli, empty), sli)

    def test_weighted(self, weighted, outcomes):
        augmented = append_rows(weighted, build_weighted_rows(outcomes))
        assert len(augmented) == 4
        assert augmented.iloc[-1]["weight"] == 1


class TestConflicts:

    def test_no_conflict_for_new_codes(self, sli, outcomes):
        assert len(find_conflicts(sli, build_sli_rows(outcomes))) == 0

    def test_same_mapping_is_not_a_conflict(self, sli):
        same = pd.DataFrame({"POSTALCODE": ["K2P1L4"], "ONS_ID": [8]})
        assert len(find_conflicts(sli, same)) == 0

    def test_different_mapping_is_a_conflict(self, sli):
        clash = pd.DataFrame({"POSTALCODE": ["K2P1L4"], "ONS_ID": [3]})
        conflicts = find_conflicts(sli, clash)
        assert conflicts.to_dict("records") == [
            {"POSTALCODE": "K2P1L4", "ONS_ID_existing": 8, "ONS_ID_new": 3}
        ]

    def test_flag_policy_keeps_rows(self, sli, logger):
        clash = pd.DataFrame({"POSTALCODE": ["K2P1L4"], "ONS_ID": [3]})
        conflicts = check_conflicts(sli, clash, policy="flag", logger=logger)
        assert len(conflicts) == 1
        assert len(append_rows(sli, clash)) == 3
        assert "different neighbourhood" in logger.log_file.read_text(encoding="utf-8")

    def test_error_policy_raises(self, sli):
        clash = pd.DataFrame({"POSTALCODE": ["K2P1L4"], "ONS_ID": [3]})
        with pytest.raises(CrosswalkConflictError):
            check_conflicts(sli, clash, policy="error")

    def test_unknown_policy(self, sli):
        with pytest.raises(ValueError):
            check_conflicts(sli, sli, policy="overwrite")


class TestIdDtypes:
    """Integer ids delivered as floats by vector formats."""

    def test_float_new_ids_keep_existing_integer_dtype(self, sli):
        new_rows = pd.DataFrame({"POSTALCODE": ["K1H7S5"], "ONS_ID": [7.0]})
        augmented = append_rows(sli, new_rows)
        assert pd.api.types.is_integer_dtype(augmented["ONS_ID"])
        assert augmented["ONS_ID"].tolist() == [8, 7, 7]

    def test_nullable_new_ids_keep_existing_integer_dtype(self, sli):
        new_rows = pd.DataFrame({"POSTALCODE": ["K1H7S5"], "ONS_ID": pd.array([7], dtype="Int64")})
        augmented = append_rows(sli, new_rows)
        assert augmented["ONS_ID"].dtype == sli["ONS_ID"].dtype

    def test_fractional_ids_not_truncated(self, sli):
        new_rows = pd.DataFrame({"POSTALCODE": ["K1H7S5"], "ONS_ID": [7.5]})
        augmented = append_rows(sli, new_rows)
        assert augmented["ONS_ID"].iloc[-1] == 7.5

    def test_float_and_int_same_id_is_not_a_conflict(self, sli):
        same = pd.DataFrame({"POSTALCODE": ["K2P1L4"], "ONS_ID": [8.0]})
        assert len(find_conflicts(sli, same)) == 0

    def test_float_and_int_different_id_is_a_conflict(self, sli):
        clash = pd.DataFrame({"POSTALCODE": ["K2P1L4"], "ONS_ID": [7.0]})
        assert len(find_conflicts(sli, clash)) == 1

    def test_error_policy_tolerates_float_spelling(self, sli):
        same = pd.DataFrame({"POSTALCODE": ["K2P1L4"], "ONS_ID": [8.0]})
        assert len(check_conflicts(sli, same, policy="error")) == 0
