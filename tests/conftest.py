"""
Shared pytest fixtures for the catalog test suite.
"""
from datetime import datetime, timezone

import pytest

from iptv_catalog.config import CustomSettings
from iptv_catalog.services.catalog_types import CatalogSnapshot


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    """Settings with a single HTTP attempt and short feed deadlines."""
    return CustomSettings(
        http_max_retries=1,
        http_backoff_factor=1.0,
        core_feed_timeout_sec=2.0,
        aux_feed_timeout_sec=1.0,
        series_feed_timeout_sec=1.0,
        epg_feed_timeout_sec=1.0,
        series_info_timeout_sec=1.0,
        shared_store_path=None,
    )


@pytest.fixture
def make_snapshot():
    """Factory for empty snapshots, stamped now unless told otherwise."""

    def _make(built_at: datetime | None = None, **fields) -> CatalogSnapshot:
        return CatalogSnapshot(
            channels=fields.get("channels", ()),
            movies=fields.get("movies", ()),
            series=fields.get("series", ()),
            epg=fields.get("epg", {}),
            built_at=built_at or datetime.now(timezone.utc),
        )

    return _make
