"""
Geocoding client for postal codes.

Queries the Google Geocoding API one postal code at a time:
- a shared token bucket caps aggregate throughput (the service allows
  ~50 req/s; we default to 40)
- a token is taken before every request, whatever the worker count
- any per-code failure (zero results, error status, HTTP or network
  error) yields None; nothing is retried
- a missing API key is fatal before any request is made
"""

import os
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd
import requests

from ons_xwalk.io_utils import atomic_write_df, read_df, read_yaml
from ons_xwalk.paths import CONFIG_DIR
from ons_xwalk.schemas import LEDGER_CODE_COL

DEFAULT_ENDPOINT = "https://maps.googleapis.com/maps/api/geocode/json"
DEFAULT_API_KEY_ENV = "GOOGLE_MAPS_API_KEY"
DEFAULT_RATE_PER_SEC = 40.0
DEFAULT_TIMEOUT_S = 10.0

Coordinate = Tuple[float, float]


class MissingCredentialError(Exception):
    """Raised when no geocoding API key is available."""
    pass


def _load_geocoder_config() -> dict:
    """Load geocoder configuration from params.yml."""
    params_path = CONFIG_DIR / "params.yml"
    if not params_path.exists():
        return {}
    return read_yaml(params_path).get("geocoder", {})


def resolve_api_key(env_var: Optional[str] = None) -> str:
    """
    Read the API key from the environment.

    Args:
        env_var: Variable name; defaults to the configured api_key_env

    Raises:
        MissingCredentialError: If the variable is unset or blank
    """
    if env_var is None:
        env_var = _load_geocoder_config().get("api_key_env", DEFAULT_API_KEY_ENV)
    api_key = os.environ.get(env_var, "").strip()
    if not api_key:
        raise MissingCredentialError(
            f"No geocoding API key found. Set the {env_var} environment variable."
        )
    return api_key


# =============================================================================
# Rate limiting
# =============================================================================

class TokenBucket:
    """
    Thread-safe token bucket.

    Tokens refill continuously at rate_per_sec up to capacity. acquire()
    blocks until a token is available. With capacity 1 no burst can
    exceed the configured rate.
    """

    def __init__(
        self,
        rate_per_sec: float,
        capacity: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate_per_sec <= 0:
            raise ValueError(f"rate_per_sec must be positive, got {rate_per_sec}")
        self.rate_per_sec = float(rate_per_sec)
        self.capacity = float(capacity) if capacity is not None else 1.0
        self.tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self.updated_at = clock()
        self.lock = threading.Lock()

    def acquire(self, tokens: float = 1.0) -> None:
        while True:
            with self.lock:
                now = self._clock()
                elapsed = now - self.updated_at
                self.tokens = min(self.capacity, self.tokens + elapsed * self.rate_per_sec)
                self.updated_at = now
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return
                deficit = tokens - self.tokens
                # Floor keeps float rounding from producing a zero-length wait
                wait_for = max(deficit / self.rate_per_sec, 0.001)
            self._sleep(wait_for)


# =============================================================================
# Client
# =============================================================================

class GeocoderClient:
    """
    Postal code -> (lat, lng) lookups against the Google Geocoding API.

    Usage:
        client = GeocoderClient(api_key=resolve_api_key())
        client.geocode("K1H7S5")  # (45.38, -75.68) or None
    """

    def __init__(
        self,
        api_key: str,
        rate_limiter: Optional[TokenBucket] = None,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = DEFAULT_TIMEOUT_S,
        region: Optional[str] = None,
        session: Optional[requests.Session] = None,
        logger=None,
    ) -> None:
        if not api_key or not str(api_key).strip():
            raise MissingCredentialError("GeocoderClient requires a non-empty API key")
        self._api_key = str(api_key).strip()
        self.rate_limiter = rate_limiter or TokenBucket(DEFAULT_RATE_PER_SEC)
        self.endpoint = endpoint
        self.timeout = timeout
        self.region = region
        self.session = session or requests.Session()
        self.logger = logger
        self.status_counts: Counter = Counter()
        self._counts_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        api_key: str,
        config: Optional[dict] = None,
        session: Optional[requests.Session] = None,
        logger=None,
    ) -> "GeocoderClient":
        """Build a client from the geocoder section of params.yml."""
        if config is None:
            config = _load_geocoder_config()
        limiter = TokenBucket(
            rate_per_sec=config.get("rate_per_sec", DEFAULT_RATE_PER_SEC),
            capacity=config.get("burst", 1),
        )
        return cls(
            api_key=api_key,
            rate_limiter=limiter,
            endpoint=config.get("endpoint", DEFAULT_ENDPOINT),
            timeout=config.get("timeout_s", DEFAULT_TIMEOUT_S),
            region=config.get("region"),
            session=session,
            logger=logger,
        )

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "GeocoderClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _record(self, status: str, address: str) -> None:
        with self._counts_lock:
            self.status_counts[status] += 1
        if self.logger:
            self.logger.debug(f"Geocode {address}: {status}")

    def geocode(self, address: str) -> Optional[Coordinate]:
        """
        Look up one address.

        Returns:
            (lat, lng) of the first result, or None on any failure
        """
        params = {"address": address, "key": self._api_key}
        if self.region:
            params["region"] = self.region

        self.rate_limiter.acquire()

        try:
            response = self.session.get(self.endpoint, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            # Exception text can echo the request URL, which carries the key
            self._record(f"NETWORK_ERROR:{type(e).__name__}", address)
            return None

        if not response.ok:
            self._record(f"HTTP_{response.status_code}", address)
            return None

        try:
            payload = response.json()
        except ValueError:
            self._record("INVALID_JSON", address)
            return None

        return self._parse_payload(payload, address)

    def _parse_payload(self, payload: Any, address: str) -> Optional[Coordinate]:
        if not isinstance(payload, dict):
            self._record("INVALID_PAYLOAD", address)
            return None

        status = payload.get("status", "UNKNOWN")
        results = payload.get("results") or []
        if status != "OK" or not results:
            self._record(status if status != "OK" else "ZERO_RESULTS", address)
            return None

        try:
            location = results[0]["geometry"]["location"]
            coord = (float(location["lat"]), float(location["lng"]))
        except (KeyError, TypeError, ValueError, IndexError):
            self._record("INVALID_PAYLOAD", address)
            return None

        self._record("OK", address)
        return coord


# =============================================================================
# Batch geocoding
# =============================================================================

def _read_checkpoint(checkpoint_path: Optional[Path]) -> Dict[str, Tuple[Optional[float], Optional[float]]]:
    """Previously geocoded codes, keyed by postal code."""
    if checkpoint_path is None or not Path(checkpoint_path).exists():
        return {}
    df = read_df(checkpoint_path, dtype={LEDGER_CODE_COL: str})
    done = {}
    for row in df.itertuples(index=False):
        lat = getattr(row, "lat")
        lng = getattr(row, "lng")
        done[getattr(row, LEDGER_CODE_COL)] = (
            None if pd.isna(lat) else float(lat),
            None if pd.isna(lng) else float(lng),
        )
    return done


def _to_frame(codes: Sequence[str], results: Dict[str, Tuple[Optional[float], Optional[float]]]) -> pd.DataFrame:
    rows = [
        {LEDGER_CODE_COL: code, "lat": results[code][0], "lng": results[code][1]}
        for code in codes
        if code in results
    ]
    df = pd.DataFrame(rows, columns=[LEDGER_CODE_COL, "lat", "lng"])
    df["lat"] = df["lat"].astype("float64")
    df["lng"] = df["lng"].astype("float64")
    return df


def geocode_codes(
    codes: Sequence[str],
    client: GeocoderClient,
    logger=None,
    max_workers: int = 1,
    checkpoint_path: Optional[Union[str, Path]] = None,
    checkpoint_every: int = 100,
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Geocode a list of postal codes.

    Codes already present in the checkpoint file are reused without a
    request. Progress is flushed to the checkpoint every checkpoint_every
    codes so an aborted run loses at most one batch.

    Args:
        codes: Postal codes to geocode (one request per code)
        client: Configured GeocoderClient
        logger: Optional JSONLLogger
        max_workers: Worker threads; all share the client's rate limiter
        checkpoint_path: Optional CSV to resume from and flush to
        checkpoint_every: Batch size between flushes

    Returns:
        Tuple of (DataFrame[postal_code, lat, lng] in input order, stats)
    """
    checkpoint_path = Path(checkpoint_path) if checkpoint_path is not None else None
    results = _read_checkpoint(checkpoint_path)
    reused = sum(1 for c in set(codes) if c in results)

    pending = []
    queued = set()
    for code in codes:
        if code not in results and code not in queued:
            pending.append(code)
            queued.add(code)

    if logger:
        logger.info(
            f"Geocoding {len(pending)} codes ({reused} reused from checkpoint, "
            f"{max_workers} worker(s))"
        )

    batch_size = max(1, int(checkpoint_every))
    n_done = 0

    executor = ThreadPoolExecutor(max_workers=max_workers) if max_workers > 1 else None
    try:
        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            if executor is not None:
                coords = list(executor.map(client.geocode, batch))
            else:
                coords = [client.geocode(code) for code in batch]

            for code, coord in zip(batch, coords):
                results[code] = coord if coord is not None else (None, None)

            n_done += len(batch)
            if checkpoint_path is not None:
                atomic_write_df(_to_frame(list(results.keys()), results), checkpoint_path)
            if logger:
                logger.info(f"Geocoded {n_done}/{len(pending)} codes")
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    df = _to_frame(list(codes), results)
    n_found = int(df["lat"].notna().sum())
    stats = {
        "requested": len(pending),
        "reused_from_checkpoint": reused,
        "found": n_found,
        "not_found": int(len(df) - n_found),
        "status_counts": dict(client.status_counts),
    }
    return df, stats
