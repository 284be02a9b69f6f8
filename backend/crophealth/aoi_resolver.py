"""
AOI resolution.

Picks the area to analyze from, in order: an explicit bbox query parameter,
the user's saved farm land geometry, the fixed demo AOI. Never fails; bad
input on one tier simply moves on to the next.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .api_models import AoiSource, AreaOfInterest, BBoxTuple, PolygonGeometry
from .logger_config import get_logger
from .profile_store import ProfileStore
from .sample_data import DEFAULT_DEMO_AOI
from .utils import bbox_to_polygon, parse_bbox_string, ring_list, round_bbox, validate_bbox

logger = get_logger("aoi_resolver")

QUERY_AOI_ID = "query-bbox-aoi"
QUERY_AOI_NAME = "Custom Query AOI"


@dataclass(frozen=True)
class ResolvedAoi:
    aoi: AreaOfInterest
    aoi_source: AoiSource
    geometry_used: bool
    farm_boundary_polygon: PolygonGeometry


def parse_query_bbox(raw: Optional[str]) -> Optional[BBoxTuple]:
    """
    Parse and normalize a "minLon,minLat,maxLon,maxLat" string.

    Coordinates are rounded to the cache-key precision; None when the string
    is missing, malformed or out of range (also after rounding).
    """
    if not raw or not raw.strip():
        return None
    try:
        bbox = parse_bbox_string(raw)
    except ValueError:
        return None

    valid, _ = validate_bbox(bbox)
    if not valid:
        return None

    rounded = round_bbox(bbox)
    valid, _ = validate_bbox(rounded)
    return rounded if valid else None


def _pick(override: Optional[str], default: str) -> str:
    return (override or "").strip() or default


def _rectangle(bbox: BBoxTuple) -> PolygonGeometry:
    return PolygonGeometry(**bbox_to_polygon(bbox))


async def resolve_aoi(
    user_id: Optional[str] = None,
    query_bbox: Optional[str] = None,
    aoi_id: Optional[str] = None,
    aoi_name: Optional[str] = None,
    profile_store: Optional[ProfileStore] = None,
) -> ResolvedAoi:
    """Resolve the AOI for a request. `aoi_id`/`aoi_name` override on every tier."""
    bbox = parse_query_bbox(query_bbox)
    if bbox:
        return ResolvedAoi(
            aoi=AreaOfInterest(id=_pick(aoi_id, QUERY_AOI_ID), name=_pick(aoi_name, QUERY_AOI_NAME), bbox=bbox),
            aoi_source="query_bbox",
            geometry_used=False,
            farm_boundary_polygon=_rectangle(bbox),
        )
    if query_bbox:
        logger.warning(f"Ignoring invalid bbox query parameter: {query_bbox!r}")

    if user_id:
        store = profile_store or ProfileStore()
        try:
            profile = await store.get_farm_profile(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Error resolving AOI from farm profile for user={user_id}: {e}")
            profile = None

        if profile and profile.bbox and validate_bbox(profile.bbox)[0]:
            default_name = f"{profile.farmer_name}'s Farm" if profile.farmer_name else "My Farm"
            boundary = _rectangle(profile.bbox)
            if profile.coordinates:
                try:
                    boundary = PolygonGeometry(coordinates=ring_list(profile.coordinates))
                except (TypeError, ValueError):
                    logger.warning(f"Stored boundary for user={user_id} is malformed, using its bbox")
            return ResolvedAoi(
                aoi=AreaOfInterest(
                    id=_pick(aoi_id, f"farm-{user_id}"),
                    name=_pick(aoi_name, default_name),
                    bbox=profile.bbox,
                ),
                aoi_source="profile_land_geometry",
                geometry_used=True,
                farm_boundary_polygon=boundary,
            )

    return ResolvedAoi(
        aoi=AreaOfInterest(
            id=_pick(aoi_id, DEFAULT_DEMO_AOI.id),
            name=_pick(aoi_name, DEFAULT_DEMO_AOI.name),
            bbox=DEFAULT_DEMO_AOI.bbox,
        ),
        aoi_source="demo_fallback",
        geometry_used=False,
        farm_boundary_polygon=_rectangle(DEFAULT_DEMO_AOI.bbox),
    )
