"""
Geocode-reconcile-merge pipeline.

Loader -> Missing-code resolver -> Geocoder -> Spatial resolver -> Merger.
Data flows strictly forward; nothing loops back.

Outputs (CSV, UTF-8, suffixed with the run date):
- geocodable_sli_YYYYMMDD.csv             POSTALCODE, ONS_ID
- geocodable_weighted_YYYYMMDD.csv        POSTALCODE, ONS_ID, weight
- ungeocodable_YYYYMMDD.csv               postal_code, ONS_ID (null)
- crosswalk_weighted_augmented_YYYYMMDD.csv
- crosswalk_sli_augmented_YYYYMMDD.csv
- crosswalk_conflicts_YYYYMMDD.csv        only when conflicts exist
"""

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from ons_xwalk.geocoder import GeocoderClient, geocode_codes
from ons_xwalk.hashing import write_metadata_sidecar
from ons_xwalk.io_utils import atomic_write_df
from ons_xwalk.loaders import load_candidate_codes, load_crosswalk, load_polygons
from ons_xwalk.merge import (
    OUTCOME_MATCHED,
    append_rows,
    build_sli_rows,
    build_ungeocodable_ledger,
    build_weighted_rows,
    check_conflicts,
    classify_outcomes,
    outcome_counts,
)
from ons_xwalk.paths import METADATA_DIR, PROJECT_ROOT, XWALK_DIR
from ons_xwalk.qa import compute_na_rates, get_crs_info
from ons_xwalk.resolver import find_missing_codes, split_valid_codes
from ons_xwalk.schemas import (
    CROSSWALK_SLI_SCHEMA,
    CROSSWALK_WEIGHTED_SCHEMA,
    GEOCODE_SCHEMA,
    ONS_ID_COL,
    POSTALCODE_COL,
    UNGEOCODABLE_SCHEMA,
    validate_schema,
)
from ons_xwalk.spatial import assign_neighbourhoods, geocodes_to_points, log_join_stats


@dataclass
class PipelineInputs:
    """Locations of the pipeline's input files."""
    candidates: Path
    crosswalk_sli: Path
    crosswalk_weighted: Path
    ons_polygons: Path
    ldu_polygons: Optional[Path] = None
    candidates_sheet: Union[int, str] = 0

    @classmethod
    def from_config(cls, config: Dict[str, Any], root: Path = PROJECT_ROOT) -> "PipelineInputs":
        """Resolve the inputs section of params.yml against the project root."""
        section = config.get("inputs", {})

        def _path(key: str) -> Optional[Path]:
            value = section.get(key)
            if value is None:
                return None
            p = Path(value)
            return p if p.is_absolute() else root / p

        return cls(
            candidates=_path("candidates"),
            crosswalk_sli=_path("crosswalk_sli"),
            crosswalk_weighted=_path("crosswalk_weighted"),
            ons_polygons=_path("ons_polygons"),
            ldu_polygons=_path("ldu_polygons"),
            candidates_sheet=section.get("candidates_sheet", 0),
        )

    def as_dict(self) -> Dict[str, str]:
        paths = {
            "candidates": self.candidates,
            "crosswalk_sli": self.crosswalk_sli,
            "crosswalk_weighted": self.crosswalk_weighted,
            "ons_polygons": self.ons_polygons,
            "ldu_polygons": self.ldu_polygons,
        }
        return {k: str(v) for k, v in paths.items() if v is not None}


@dataclass
class PipelineResult:
    """Everything a run produced."""
    candidates: List[str]
    missing: List[str]
    invalid: List[str]
    geocoded: pd.DataFrame
    outcomes: pd.DataFrame
    sli_rows: pd.DataFrame
    weighted_rows: pd.DataFrame
    ledger: pd.DataFrame
    sli_augmented: pd.DataFrame
    weighted_augmented: pd.DataFrame
    conflicts: pd.DataFrame
    geocode_stats: Dict[str, Any] = field(default_factory=dict)
    join_stats: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Path] = field(default_factory=dict)

    @property
    def metrics(self) -> Dict[str, Any]:
        counts = outcome_counts(self.outcomes)
        return {
            "candidate_codes": len(self.candidates),
            "unique_candidate_codes": len(set(self.candidates)),
            "missing_codes": len(self.missing),
            "invalid_codes": counts["invalid"],
            "geocoded": int(self.geocoded["lat"].notna().sum()),
            "matched": counts["matched"],
            "outside_polygons": counts["outside_polygons"],
            "not_geocoded": counts["not_geocoded"],
            "ungeocodable": len(self.ledger),
            "conflicts": len(self.conflicts),
            "sli_rows_before": len(self.sli_augmented) - len(self.sli_rows),
            "sli_rows_after": len(self.sli_augmented),
            "weighted_rows_before": len(self.weighted_augmented) - len(self.weighted_rows),
            "weighted_rows_after": len(self.weighted_augmented),
        }


def output_paths(output_dir: Path, run_date: date, with_conflicts: bool = False) -> Dict[str, Path]:
    """Date-stamped output file locations."""
    stamp = run_date.strftime("%Y%m%d")
    outputs = {
        "geocodable_sli": output_dir / f"geocodable_sli_{stamp}.csv",
        "geocodable_weighted": output_dir / f"geocodable_weighted_{stamp}.csv",
        "ungeocodable": output_dir / f"ungeocodable_{stamp}.csv",
        "crosswalk_weighted_augmented": output_dir / f"crosswalk_weighted_augmented_{stamp}.csv",
        "crosswalk_sli_augmented": output_dir / f"crosswalk_sli_augmented_{stamp}.csv",
    }
    if with_conflicts:
        outputs["crosswalk_conflicts"] = output_dir / f"crosswalk_conflicts_{stamp}.csv"
    return outputs


def run_pipeline(
    inputs: PipelineInputs,
    client: GeocoderClient,
    logger,
    config: Optional[Dict[str, Any]] = None,
    output_dir: Optional[Path] = None,
    run_date: Optional[date] = None,
    checkpoint_path: Optional[Path] = None,
    metadata_dir: Optional[Path] = None,
    write_outputs: bool = True,
) -> PipelineResult:
    """
    Run the full reconciliation.

    Args:
        inputs: Input file locations
        client: Geocoder client (already holding its credential)
        logger: JSONLLogger
        config: Parsed params.yml (empty dict if None)
        output_dir: Where CSV outputs go (default: XWALK_DIR)
        run_date: Date stamped on outputs (default: today)
        checkpoint_path: Optional geocoder checkpoint CSV
        metadata_dir: Where sidecars go (default: METADATA_DIR)
        write_outputs: If False, compute everything but write nothing

    Returns:
        PipelineResult

    Raises:
        SchemaError, CRSError, ValueError, SpatialJoinError: On unusable inputs
        RuntimeError: If an outcome bucket invariant is violated
    """
    config = config or {}
    output_dir = Path(output_dir) if output_dir is not None else XWALK_DIR
    metadata_dir = Path(metadata_dir) if metadata_dir is not None else METADATA_DIR
    run_date = run_date or date.today()

    geocoder_cfg = config.get("geocoder", {})
    join_cfg = config.get("spatial_join", {})
    polygon_id_col = join_cfg.get("polygon_id_col", ONS_ID_COL)
    conflict_policy = config.get("crosswalk", {}).get("conflict_policy", "flag")
    valid_pattern = config.get("postal_code", {}).get("valid_pattern")

    logger.log_inputs(inputs.as_dict())

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------
    candidates = load_candidate_codes(inputs.candidates, inputs.candidates_sheet)
    logger.info(f"Loaded {len(candidates)} candidate codes ({len(set(candidates))} unique)")

    sli = load_crosswalk(inputs.crosswalk_sli, CROSSWALK_SLI_SCHEMA)
    weighted = load_crosswalk(inputs.crosswalk_weighted, CROSSWALK_WEIGHTED_SCHEMA)
    logger.info(f"Loaded crosswalks: {len(sli)} SLI rows, {len(weighted)} weighted rows")

    ons = load_polygons(inputs.ons_polygons, polygon_id_col, "ONS neighbourhoods")
    crs_info = {"ons_polygons": get_crs_info(ons)}
    if inputs.ldu_polygons is not None:
        ldu_id_col = join_cfg.get("ldu_id_col", POSTALCODE_COL)
        ldu = load_polygons(inputs.ldu_polygons, ldu_id_col, "LDU reference")
        crs_info["ldu_polygons"] = get_crs_info(ldu)
    logger.log_crs_info(crs_info)

    # ------------------------------------------------------------------
    # Resolve missing codes
    # ------------------------------------------------------------------
    missing = find_missing_codes(candidates, sli[POSTALCODE_COL])
    valid, invalid = split_valid_codes(missing, valid_pattern)
    logger.info(f"{len(missing)} codes missing from crosswalk; {len(invalid)} structurally invalid")
    if invalid:
        logger.warning(f"Skipping invalid postal codes: {invalid[:20]}")

    # ------------------------------------------------------------------
    # Geocode
    # ------------------------------------------------------------------
    geocoded, geocode_stats = geocode_codes(
        valid,
        client,
        logger=logger,
        max_workers=int(geocoder_cfg.get("max_workers", 1)),
        checkpoint_path=checkpoint_path,
        checkpoint_every=int(geocoder_cfg.get("checkpoint_every", 100)),
    )
    logger.log_geocode_stats(geocode_stats)
    validate_schema(geocoded, GEOCODE_SCHEMA, context="geocoder output")
    logger.info("Geocoder output NA rates", extra={"na_rates": compute_na_rates(geocoded)})

    # ------------------------------------------------------------------
    # Spatial join
    # ------------------------------------------------------------------
    points = geocodes_to_points(geocoded)
    assigned, join_stats = assign_neighbourhoods(
        points,
        ons,
        polygon_id_col=polygon_id_col,
        predicate=join_cfg.get("predicate", "intersects"),
    )
    log_join_stats(join_stats, logger)
    logger.log_join_stats(join_stats)

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------
    outcomes = classify_outcomes(missing, invalid, geocoded, assigned, polygon_id_col)
    sli_rows = build_sli_rows(outcomes)
    weighted_rows = build_weighted_rows(outcomes)
    ledger = build_ungeocodable_ledger(outcomes)

    conflicts = pd.concat(
        [
            check_conflicts(sli, sli_rows, conflict_policy, "SLI", logger),
            check_conflicts(weighted, weighted_rows, conflict_policy, "weighted", logger),
        ],
        ignore_index=True,
    ).drop_duplicates()

    sli_augmented = append_rows(sli, sli_rows)
    weighted_augmented = append_rows(weighted, weighted_rows)

    n_matched = int((outcomes["outcome"] == OUTCOME_MATCHED).sum())
    if len(ledger) + n_matched != len(missing):
        raise RuntimeError(
            f"Outcome buckets do not cover missing codes: "
            f"{len(ledger)} ungeocodable + {n_matched} matched != {len(missing)} missing"
        )
    if len(sli_augmented) != len(sli) + len(sli_rows):
        raise RuntimeError("SLI crosswalk row count changed unexpectedly during append")
    if len(weighted_augmented) != len(weighted) + len(weighted_rows):
        raise RuntimeError("Weighted crosswalk row count changed unexpectedly during append")

    validate_schema(sli_rows, CROSSWALK_SLI_SCHEMA, context="geocodable SLI rows")
    validate_schema(weighted_rows, CROSSWALK_WEIGHTED_SCHEMA, context="geocodable weighted rows")
    validate_schema(ledger, UNGEOCODABLE_SCHEMA, context="ungeocodable ledger")

    result = PipelineResult(
        candidates=candidates,
        missing=missing,
        invalid=invalid,
        geocoded=geocoded,
        outcomes=outcomes,
        sli_rows=sli_rows,
        weighted_rows=weighted_rows,
        ledger=ledger,
        sli_augmented=sli_augmented,
        weighted_augmented=weighted_augmented,
        conflicts=conflicts,
        geocode_stats=geocode_stats,
        join_stats=join_stats,
    )
    logger.log_metrics(result.metrics)

    if write_outputs:
        result.outputs = write_pipeline_outputs(
            result, inputs, output_dir, run_date, config, logger, metadata_dir
        )

    return result


def write_pipeline_outputs(
    result: PipelineResult,
    inputs: PipelineInputs,
    output_dir: Path,
    run_date: date,
    config: Dict[str, Any],
    logger,
    metadata_dir: Path,
) -> Dict[str, Path]:
    """Atomically write every output CSV plus its metadata sidecar."""
    outputs = output_paths(output_dir, run_date, with_conflicts=len(result.conflicts) > 0)
    frames = {
        "geocodable_sli": result.sli_rows,
        "geocodable_weighted": result.weighted_rows,
        "ungeocodable": result.ledger,
        "crosswalk_weighted_augmented": result.weighted_augmented,
        "crosswalk_sli_augmented": result.sli_augmented,
        "crosswalk_conflicts": result.conflicts,
    }

    for name, path in outputs.items():
        atomic_write_df(frames[name], path)
        logger.info(f"Wrote {path} ({len(frames[name])} rows)")

    logger.log_outputs({k: str(v) for k, v in outputs.items()})

    for name, path in outputs.items():
        write_metadata_sidecar(
            output_path=path,
            inputs=inputs.as_dict(),
            config=config,
            run_id=logger.run_id,
            extra={"rows": len(frames[name])},
            metadata_dir=metadata_dir,
        )

    return outputs
