"""
Shared fixtures: fake geocoding HTTP session, synthetic ONS polygons, logger.

Nothing here touches the network.
"""

from typing import Dict, Optional, Tuple

import geopandas as gpd
import pytest
from shapely.geometry import box

from ons_xwalk.geocoder import GeocoderClient, TokenBucket
from ons_xwalk.logging_utils import JSONLLogger

TEST_API_KEY = "test-key-not-real"


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, payload=None, status_code: int = 200, bad_json: bool = False):
        self._payload = payload
        self.status_code = status_code
        self._bad_json = bad_json

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._bad_json:
            raise ValueError("No JSON object could be decoded")
        return self._payload


def ok_payload(lat: float, lng: float) -> dict:
    return {
        "status": "OK",
        "results": [{"geometry": {"location": {"lat": lat, "lng": lng}}}],
    }


ZERO_RESULTS_PAYLOAD = {"status": "ZERO_RESULTS", "results": []}


class FakeSession:
    """
    Records every GET and answers from a lookup table.

    Table values may be a (lat, lng) tuple, None (zero results), a
    FakeResponse, or an exception instance to raise.
    """

    def __init__(self, table: Optional[Dict[str, object]] = None):
        self.table = table or {}
        self.calls = []
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        answer = self.table.get(params["address"])
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, FakeResponse):
            return answer
        if answer is None:
            return FakeResponse(ZERO_RESULTS_PAYLOAD)
        lat, lng = answer
        return FakeResponse(ok_payload(lat, lng))

    def close(self):
        self.closed = True


class NoRequestSession(FakeSession):
    """Fails the test if any request is made."""

    def get(self, url, params=None, timeout=None):
        raise AssertionError(f"Unexpected geocoding request for {params}")


class CountingLimiter:
    """Rate limiter that only counts acquisitions."""

    def __init__(self):
        self.acquired = 0

    def acquire(self, tokens: float = 1.0) -> None:
        self.acquired += 1


@pytest.fixture
def make_client():
    """Factory for a GeocoderClient backed by a FakeSession."""

    def _make(table=None, session=None, logger=None) -> Tuple[GeocoderClient, FakeSession]:
        session = session or FakeSession(table)
        client = GeocoderClient(
            api_key=TEST_API_KEY,
            rate_limiter=TokenBucket(rate_per_sec=1e6, capacity=1e6),
            session=session,
            logger=logger,
        )
        return client, session

    return _make


@pytest.fixture
def logger(tmp_path):
    """JSONL logger writing under the test's tmp dir."""
    log = JSONLLogger("test_run", log_dir=tmp_path / "logs")
    yield log
    log.close()


@pytest.fixture
def ons_polygons():
    """
    Two adjacent neighbourhoods around central Ottawa (EPSG:4326).

    ONS_ID 7 is the smaller western square, 8 the larger eastern rectangle.
    They share the edge at lng -75.66.
    """
    return gpd.GeoDataFrame(
        {"ONS_ID": [7, 8], "name": ["Alta Vista", "Overbrook"]},
        geometry=[
            box(-75.70, 45.36, -75.66, 45.40),
            box(-75.66, 45.36, -75.60, 45.40),
        ],
        crs="EPSG:4326",
    )


# Inside 7, inside 8, and far outside both
POINT_IN_7 = (45.38, -75.68)
POINT_IN_8 = (45.38, -75.62)
POINT_OUTSIDE = (43.65, -79.38)
