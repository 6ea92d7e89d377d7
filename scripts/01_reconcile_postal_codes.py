#!/usr/bin/env python3
"""
01_reconcile_postal_codes.py

Geocode postal codes missing from the ONS crosswalks and merge them back in.

- Candidate codes not in the SLI crosswalk are geocoded (Google Geocoding API,
  <= 40 req/s)
- Geocoded points are assigned to ONS neighbourhoods by point-in-polygon join
- Matched codes are appended to both crosswalks; the rest go to a ledger

The API key is read from the environment variable named in
configs/params.yml (geocoder.api_key_env). A missing key aborts the run
before anything is loaded.

Outputs:
- data/processed/xwalk/geocodable_sli_YYYYMMDD.csv
- data/processed/xwalk/geocodable_weighted_YYYYMMDD.csv
- data/processed/xwalk/ungeocodable_YYYYMMDD.csv
- data/processed/xwalk/crosswalk_weighted_augmented_YYYYMMDD.csv
- data/processed/xwalk/crosswalk_sli_augmented_YYYYMMDD.csv
- data/processed/metadata/*_metadata.json
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from datetime import date

from ons_xwalk.geocoder import GeocoderClient, resolve_api_key
from ons_xwalk.hashing import hash_dict
from ons_xwalk.io_utils import read_yaml
from ons_xwalk.logging_utils import get_logger
from ons_xwalk.paths import CONFIG_DIR, GEOCODE_CACHE_DIR, XWALK_DIR, ensure_dirs_exist
from ons_xwalk.pipeline import PipelineInputs, run_pipeline


def main():
    """Main entry point."""
    with get_logger("01_reconcile_postal_codes") as logger:
        logger.info("Starting 01_reconcile_postal_codes.py")

        config = read_yaml(CONFIG_DIR / "params.yml")
        logger.log_config(config, config_digest=hash_dict(config))

        try:
            geocoder_cfg = config.get("geocoder", {})
            api_key = resolve_api_key(geocoder_cfg.get("api_key_env"))

            ensure_dirs_exist()
            run_date = date.today()
            inputs = PipelineInputs.from_config(config)
            checkpoint_path = GEOCODE_CACHE_DIR / f"geocode_checkpoint_{run_date:%Y%m%d}.csv"

            with GeocoderClient.from_config(api_key, geocoder_cfg, logger=logger) as client:
                result = run_pipeline(
                    inputs,
                    client,
                    logger,
                    config=config,
                    output_dir=XWALK_DIR,
                    run_date=run_date,
                    checkpoint_path=checkpoint_path,
                )

            metrics = result.metrics
            logger.info(
                f"SUCCESS: {metrics['matched']} codes added to crosswalks, "
                f"{metrics['ungeocodable']} written to the ungeocodable ledger"
            )

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
