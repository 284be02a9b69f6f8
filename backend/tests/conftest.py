"""
Shared fixtures for the crop health test suite.

Environment is pinned before any crophealth module is imported: no CDSE
credentials (so every provider call takes the fallback path unless a test
injects its own settings) and a throwaway SQLite database.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine

_TEST_DIR = tempfile.mkdtemp(prefix="crophealth-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'app.db')}"
os.environ["CDSE_CLIENT_ID"] = ""
os.environ["CDSE_CLIENT_SECRET"] = ""
os.environ["CDSE_RATE_LIMIT_PER_MIN"] = "100000"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from crophealth.api_models import (  # noqa: E402
    AnalysisMetadata,
    CacheEntry,
    CacheStatus,
    DateRange,
    HealthInsight,
    IngestMetadata,
    IngestResult,
    ResponseMetadata,
    SourceScene,
)
from crophealth.config import Settings  # noqa: E402
from crophealth.database import Base, build_engine, build_session_maker  # noqa: E402
from crophealth.sample_data import DEFAULT_DEMO_AOI, FALLBACK_SCENES, SAMPLE_SET_VERSION  # noqa: E402


T0 = datetime(2026, 3, 1, 6, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class StubBroker:
    """Token broker double that never touches the network."""

    def __init__(self, token: str = "test-token"):
        self.token = token
        self.invalidated = 0

    async def get_token(self) -> str:
        return self.token

    def invalidate(self) -> None:
        self.invalidated += 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stub_broker():
    return StubBroker()


@pytest.fixture
def cdse_settings():
    """Settings with credentials present, pointing at fake endpoints."""
    return Settings(
        cdse_client_id="client-id",
        cdse_client_secret="client-secret",
        cdse_token_url="https://identity.test/token",
        cdse_catalog_url="https://sh.test/api/v1/catalog/1.0.0/search",
        cdse_process_url="https://sh.test/api/v1/process",
        cdse_collection="sentinel-2-l2a",
    )


@pytest.fixture
def session_maker(tmp_path):
    """Fresh SQLite database per test, tables created through a sync engine."""
    db_path = tmp_path / "cache.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    return build_session_maker(build_engine(f"sqlite+aiosqlite:///{db_path}"))


def _sample_ingest(start, end, max_cloud_cover, max_results, data_source="fallback_sample"):
    return IngestResult(
        success=True,
        data_source=data_source,
        scenes=FALLBACK_SCENES[:max_results],
        metadata=IngestMetadata(
            provider="cdse-sentinel-hub",
            collection="sentinel-2-l2a",
            ingested_at=T0,
            aoi=DEFAULT_DEMO_AOI,
            max_cloud_cover=max_cloud_cover,
            requested_range=DateRange(start_date=start, end_date=end),
            sample_set_version=SAMPLE_SET_VERSION if data_source == "fallback_sample" else None,
        ),
        error="CDSE_CLIENT_ID is missing in environment." if data_source == "fallback_sample" else None,
    )


class FakeSearch:
    """
    Stand-in for search_scenes. Serves the sample scenes, or raises `error`
    when one is set. Records every call.
    """

    def __init__(self, data_source: str = "fallback_sample"):
        self.data_source = data_source
        self.error = None
        self.calls = []

    async def __call__(self, aoi, start_date, end_date, max_cloud_cover, max_results, allow_fallback):
        self.calls.append({
            "aoi": aoi,
            "start_date": start_date,
            "end_date": end_date,
            "max_cloud_cover": max_cloud_cover,
            "max_results": max_results,
            "allow_fallback": allow_fallback,
        })
        if self.error is not None:
            raise self.error
        return _sample_ingest(start_date, end_date, max_cloud_cover, max_results, self.data_source)


@pytest.fixture
def fake_search():
    return FakeSearch()


@pytest.fixture
def make_cache_entry():
    """Factory for minimal, valid cache entries."""

    def _make(
        cache_key="sat-health|anonymous|85.200000:20.100000:85.450000:20.350000|estimated|cc35|mr3",
        user_id=None,
        cached_at=T0,
        ttl_hours=24,
        score=72,
        reason=None,
    ):
        expires_at = cached_at + timedelta(hours=ttl_hours)
        scene = FALLBACK_SCENES[0]
        health = HealthInsight(
            generated_at=cached_at,
            data_source="fallback_sample",
            confidence=0.7,
            score_label="good",
            normalized_health_score=score,
            baseline_score=70,
            score_delta=score - 70,
            trend="stable",
            ndvi_estimate=0.62,
            baseline_ndvi_estimate=0.6,
            summary_card_text=f"Crop health is stable ({score}/100), close to baseline.",
            current_scene=scene,
            high_accuracy_unavailable_reason=reason,
        )
        analysis = AnalysisMetadata(
            aoi=DEFAULT_DEMO_AOI,
            aoi_source="demo_fallback",
            geometry_used=False,
            current_requested_range=DateRange(start_date=T0.date(), end_date=T0.date()),
            baseline_requested_range=DateRange(start_date=T0.date(), end_date=T0.date()),
            current_scene_count=1,
            baseline_scene_count=1,
        )
        metadata = ResponseMetadata(
            **dict(analysis),
            precision_mode="estimated",
            source_scene=SourceScene(scene_id=scene.scene_id, captured_at=scene.captured_at),
            cache=CacheStatus(hit=False, key=cache_key, expires_at=expires_at),
        )
        return CacheEntry(
            cache_key=cache_key,
            user_id=user_id,
            aoi=DEFAULT_DEMO_AOI,
            precision_mode="estimated",
            data_source="fallback_sample",
            source_scene_id=scene.scene_id,
            source_captured_at=scene.captured_at,
            cached_at=cached_at,
            expires_at=expires_at,
            health_payload=health,
            metadata=metadata,
        )

    return _make
