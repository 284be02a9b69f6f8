"""
Unit tests for AOI resolution and the farm profile store.
"""

import pytest
from sqlalchemy.exc import OperationalError

from crophealth.aoi_resolver import parse_query_bbox, resolve_aoi
from crophealth.cache_store import build_cache_key
from crophealth.profile_store import FarmProfile, ProfileStore


class FakeProfileStore:
    def __init__(self, profile=None, error=None):
        self.profile = profile
        self.error = error
        self.calls = []

    async def get_farm_profile(self, user_id):
        self.calls.append(user_id)
        if self.error:
            raise self.error
        return self.profile


class TestParseQueryBbox:
    """Tests for the explicit bbox tier."""

    def test_valid_bbox(self):
        assert parse_query_bbox("85.2,20.1,85.45,20.35") == (85.2, 20.1, 85.45, 20.35)

    def test_whitespace_tolerated(self):
        assert parse_query_bbox(" 85.2 , 20.1 ,85.45, 20.35 ") == (85.2, 20.1, 85.45, 20.35)

    def test_rounds_to_six_decimals(self):
        assert parse_query_bbox("85.20000004,20.1,85.45000049,20.35") == (85.2, 20.1, 85.45, 20.35)

    def test_matches_cache_key_precision(self):
        raw = "77.123456789,12.987654321,77.2,13.05"
        bbox = parse_query_bbox(raw)
        key = build_cache_key(None, bbox, "estimated", 35, 3)

        bbox_part = key.split("|")[2]
        assert bbox_part == ":".join(f"{value:.6f}" for value in bbox)
        assert bbox == (77.123457, 12.987654, 77.2, 13.05)

    @pytest.mark.parametrize("raw", [
        None,
        "",
        "   ",
        "1,2,3",
        "1,2,3,4,5",
        "a,b,c,d",
        "85.45,20.1,85.2,20.35",   # min_lon > max_lon
        "85.2,20.35,85.45,20.1",   # min_lat > max_lat
        "85.2,20.1,85.2,20.35",    # zero width
        "-181,0,1,1",
        "0,-91,1,1",
        "nan,0,1,1",
        "0,0,inf,1",
        "1,1,1.0000001,2",         # collapses to zero width after rounding
    ])
    def test_invalid_bbox_is_absent(self, raw):
        assert parse_query_bbox(raw) is None


class TestResolveAoi:
    """Tests for tier precedence and overrides."""

    @pytest.mark.asyncio
    async def test_query_bbox_tier(self):
        store = FakeProfileStore()
        resolved = await resolve_aoi(user_id="u1", query_bbox="85.2,20.1,85.45,20.35", profile_store=store)

        assert resolved.aoi_source == "query_bbox"
        assert resolved.geometry_used is False
        assert resolved.aoi.id == "query-bbox-aoi"
        assert resolved.aoi.name == "Custom Query AOI"
        assert resolved.aoi.bbox == (85.2, 20.1, 85.45, 20.35)
        assert resolved.farm_boundary_polygon.coordinates[0][0] == [85.2, 20.35]
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_overrides_apply(self):
        resolved = await resolve_aoi(
            query_bbox="85.2,20.1,85.45,20.35", aoi_id=" plot-7 ", aoi_name="East Plot"
        )
        assert resolved.aoi.id == "plot-7"
        assert resolved.aoi.name == "East Plot"

    @pytest.mark.asyncio
    async def test_blank_override_uses_default(self):
        resolved = await resolve_aoi(query_bbox="85.2,20.1,85.45,20.35", aoi_id="   ")
        assert resolved.aoi.id == "query-bbox-aoi"

    @pytest.mark.asyncio
    async def test_profile_tier_with_ring(self):
        ring = [[[77.0, 12.1], [77.1, 12.1], [77.1, 12.0], [77.0, 12.0], [77.0, 12.1]]]
        store = FakeProfileStore(FarmProfile("u1", "Asha", (77.0, 12.0, 77.1, 12.1), ring))

        resolved = await resolve_aoi(user_id="u1", query_bbox="not,a,bbox,x", profile_store=store)

        assert resolved.aoi_source == "profile_land_geometry"
        assert resolved.geometry_used is True
        assert resolved.aoi.id == "farm-u1"
        assert resolved.aoi.name == "Asha's Farm"
        assert resolved.aoi.bbox == (77.0, 12.0, 77.1, 12.1)
        assert resolved.farm_boundary_polygon.coordinates == ring

    @pytest.mark.asyncio
    async def test_profile_tier_synthesizes_rectangle(self):
        store = FakeProfileStore(FarmProfile("u1", None, (77.0, 12.0, 77.1, 12.1), None))

        resolved = await resolve_aoi(user_id="u1", profile_store=store)

        assert resolved.aoi.name == "My Farm"
        assert resolved.farm_boundary_polygon.coordinates == [[
            [77.0, 12.1], [77.1, 12.1], [77.1, 12.0], [77.0, 12.0], [77.0, 12.1]
        ]]

    @pytest.mark.asyncio
    async def test_profile_without_bbox_falls_through(self):
        store = FakeProfileStore(FarmProfile("u1", "Asha", None, None))
        resolved = await resolve_aoi(user_id="u1", profile_store=store)
        assert resolved.aoi_source == "demo_fallback"

    @pytest.mark.asyncio
    async def test_profile_error_falls_through(self):
        store = FakeProfileStore(error=OperationalError("SELECT", {}, Exception("db down")))
        resolved = await resolve_aoi(user_id="u1", profile_store=store)

        assert resolved.aoi_source == "demo_fallback"
        assert store.calls == ["u1"]

    @pytest.mark.asyncio
    async def test_demo_fallback(self):
        resolved = await resolve_aoi()

        assert resolved.aoi_source == "demo_fallback"
        assert resolved.geometry_used is False
        assert resolved.aoi.id == "odisha-demo-aoi"
        assert resolved.aoi.name == "Odisha Demo AOI"
        assert resolved.aoi.bbox == (85.2, 20.1, 85.45, 20.35)

    @pytest.mark.asyncio
    async def test_demo_fallback_honours_overrides(self):
        resolved = await resolve_aoi(aoi_id="demo-x", aoi_name="Demo X")
        assert (resolved.aoi.id, resolved.aoi.name) == ("demo-x", "Demo X")


class TestProfileStore:
    """Tests for land geometry persistence."""

    @pytest.mark.asyncio
    async def test_missing_profile(self, session_maker):
        store = ProfileStore(session_maker)
        assert await store.get_farm_profile("nobody") is None

    @pytest.mark.asyncio
    async def test_save_then_resolve(self, session_maker):
        store = ProfileStore(session_maker)
        await store.save_land_geometry("u9", (80.0, 15.0, 80.2, 15.1), farmer_name="Ravi")

        resolved = await resolve_aoi(user_id="u9", profile_store=store)

        assert resolved.aoi_source == "profile_land_geometry"
        assert resolved.aoi.bbox == (80.0, 15.0, 80.2, 15.1)
        assert resolved.aoi.name == "Ravi's Farm"

    @pytest.mark.asyncio
    async def test_save_replaces_geometry(self, session_maker):
        store = ProfileStore(session_maker)
        await store.save_land_geometry("u9", (80.0, 15.0, 80.2, 15.1), farmer_name="Ravi")
        await store.save_land_geometry("u9", (81.0, 16.0, 81.2, 16.1))

        profile = await store.get_farm_profile("u9")
        assert profile.bbox == (81.0, 16.0, 81.2, 16.1)
        assert profile.farmer_name == "Ravi"
