"""
Scene catalog client for the CDSE STAC search endpoint.

Finds the most recent Sentinel-2 scenes over an AOI under a cloud-cover
ceiling, and falls back to the versioned sample scene set when the live
catalog cannot answer.
"""

import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from .api_models import AreaOfInterest, DateRange, IngestMetadata, IngestResult, SceneMetadata
from .config import DEFAULT_INGEST_LOOKBACK_DAYS, DEFAULT_INGEST_MAX_CLOUD_COVER, Settings, settings, validate_cdse_env
from .errors import ConfigurationError, EmptyResultError, SatelliteServiceError, TransportError
from .logger_config import get_logger
from .sample_data import DEFAULT_DEMO_AOI, SAMPLE_SET_VERSION, sample_scenes
from .token_broker import TokenBroker, token_broker
from .utils import clamp, format_number, parse_iso_datetime, rate_limit, utcnow

logger = get_logger("scene_catalog")

PROVIDER = "cdse-sentinel-hub"

# Ask for more than needed so cloud filtering still leaves enough scenes
OVERFETCH_FACTOR = 3
MIN_SEARCH_LIMIT = 12

_TILE_PATTERN = re.compile(r"_T([0-9A-Z]{5})_")


def extract_tile_id(scene_id: str) -> str:
    """Pull the MGRS tile (e.g. 45QUC) out of a Sentinel-2 product id."""
    match = _TILE_PATTERN.search(scene_id)
    return match.group(1) if match else "unknown"


def _normalize_bbox(value: Any) -> Optional[tuple]:
    if not isinstance(value, (list, tuple)) or len(value) != 4:
        return None
    if not all(isinstance(item, (int, float)) and not isinstance(item, bool) for item in value):
        return None
    return tuple(float(item) for item in value)


def _cloud_cover(properties: Dict[str, Any]) -> float:
    raw = properties.get("eo:cloud_cover")
    try:
        value = float(100 if raw is None else raw)
    except (TypeError, ValueError):
        return 100.0
    if value != value or value in (float("inf"), float("-inf")):
        return 100.0
    return clamp(value, 0.0, 100.0)


def map_feature_to_scene(feature: Dict[str, Any], collection: str) -> Optional[SceneMetadata]:
    """
    Convert one STAC feature into SceneMetadata.

    Returns None for features without an id or a parseable capture time;
    a missing cloud cover is treated as fully clouded.
    """
    if not isinstance(feature, dict):
        return None

    scene_id = feature.get("id")
    properties = feature.get("properties") or {}
    captured_at = parse_iso_datetime(properties.get("datetime"))
    if not scene_id or captured_at is None:
        return None

    thumbnail = (feature.get("assets") or {}).get("thumbnail") or {}

    return SceneMetadata(
        scene_id=str(scene_id),
        captured_at=captured_at,
        cloud_cover_percent=_cloud_cover(properties),
        tile_id=extract_tile_id(str(scene_id)),
        collection=collection,
        bbox=_normalize_bbox(feature.get("bbox")),
        quicklook_url=thumbnail.get("href") or None,
    )


def select_scenes(scenes: List[SceneMetadata], max_cloud_cover: float, max_results: int) -> List[SceneMetadata]:
    """Newest first, under the cloud ceiling, at most `max_results`."""
    ordered = sorted(scenes, key=lambda scene: scene.captured_at, reverse=True)
    return [scene for scene in ordered if scene.cloud_cover_percent <= max_cloud_cover][:max(0, max_results)]


async def fetch_live_scenes(
    aoi: AreaOfInterest,
    start_date: date,
    end_date: date,
    max_cloud_cover: float,
    max_results: int,
    broker: TokenBroker,
    config: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[SceneMetadata]:
    """
    Run one catalog search.

    Raises:
        ConfigurationError: credentials missing
        TransportError: network error, timeout or non-2xx response
        EmptyResultError: nothing left after cloud filtering
    """
    token = await broker.get_token()
    await rate_limit("cdse")

    request_body = {
        "bbox": list(aoi.bbox),
        "datetime": f"{start_date.isoformat()}T00:00:00Z/{end_date.isoformat()}T23:59:59Z",
        "collections": [config.cdse_collection],
        "limit": max(max_results * OVERFETCH_FACTOR, MIN_SEARCH_LIMIT)
    }

    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json"
    }

    try:
        async with httpx.AsyncClient(timeout=config.cdse_timeout_seconds, transport=transport) as client:
            response = await client.post(config.cdse_catalog_url, json=request_body, headers=headers)
    except httpx.TimeoutException as e:
        raise TransportError(f"CDSE catalog search timed out: {e}", source="cdse_catalog")
    except httpx.HTTPError as e:
        raise TransportError(f"CDSE catalog search failed: {e}", source="cdse_catalog")

    if response.status_code == 401:
        broker.invalidate()

    if response.status_code >= 400:
        raise TransportError(
            f"CDSE catalog search failed ({response.status_code}): {response.text[:200]}",
            source="cdse_catalog",
            status=response.status_code
        )

    try:
        data = response.json()
    except ValueError:
        raise TransportError("CDSE catalog response was not JSON.", source="cdse_catalog")

    features = (data.get("features") or []) if isinstance(data, dict) else []
    if not isinstance(features, list):
        features = []
    scenes = [scene for scene in (map_feature_to_scene(f, config.cdse_collection) for f in features) if scene]
    selected = select_scenes(scenes, max_cloud_cover, max_results)

    logger.info(
        f"Catalog returned {len(features)} features, {len(scenes)} valid, "
        f"{len(selected)} under {format_number(max_cloud_cover)}% cloud for bbox={aoi.bbox}"
    )

    if not selected:
        raise EmptyResultError(
            f"No live scenes found under cloud threshold {format_number(max_cloud_cover)}%.",
            source="cdse_catalog"
        )

    return selected


def _build_metadata(
    aoi: AreaOfInterest,
    start_date: date,
    end_date: date,
    max_cloud_cover: float,
    collection: str,
    sample_set_version: Optional[str] = None,
) -> IngestMetadata:
    return IngestMetadata(
        provider=PROVIDER,
        collection=collection,
        ingested_at=utcnow(),
        aoi=aoi,
        max_cloud_cover=max_cloud_cover,
        requested_range=DateRange(start_date=start_date, end_date=end_date),
        sample_set_version=sample_set_version,
    )


async def search_scenes(
    aoi: Optional[AreaOfInterest] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    max_cloud_cover: float = DEFAULT_INGEST_MAX_CLOUD_COVER,
    max_results: int = 3,
    allow_fallback: bool = True,
    broker: Optional[TokenBroker] = None,
    config: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> IngestResult:
    """
    Search the catalog for an AOI and date range.

    With `allow_fallback`, any failure yields the sample scene set tagged
    `fallback_sample`, with the failure reason in `error`. Without it the
    typed error is raised to the caller.
    """
    config = config or settings
    broker = broker or token_broker
    aoi = aoi or DEFAULT_DEMO_AOI

    today = utcnow().date()
    end_date = end_date or today
    start_date = start_date or (today - timedelta(days=DEFAULT_INGEST_LOOKBACK_DAYS))

    logger.info(
        f"Initiating catalog search for bbox={aoi.bbox}, range={start_date}..{end_date}, "
        f"maxCloud={format_number(max_cloud_cover)}, maxResults={max_results}"
    )

    try:
        missing = validate_cdse_env(config)
        if missing:
            raise ConfigurationError(missing, source="cdse_catalog")

        scenes = await fetch_live_scenes(
            aoi, start_date, end_date, max_cloud_cover, max_results, broker, config, transport
        )
    except SatelliteServiceError as e:
        if not allow_fallback:
            logger.error(f"Catalog search failed without fallback: {e}")
            raise

        reason = str(e) if isinstance(e, (ConfigurationError, EmptyResultError)) else f"Live ingest failed: {e}"
        logger.warning(f"Serving sample scenes ({SAMPLE_SET_VERSION}): {reason}")
        return IngestResult(
            success=True,
            data_source="fallback_sample",
            scenes=sample_scenes(max_results),
            metadata=_build_metadata(
                aoi, start_date, end_date, max_cloud_cover, config.cdse_collection, SAMPLE_SET_VERSION
            ),
            error=reason,
        )

    return IngestResult(
        success=True,
        data_source="live",
        scenes=scenes,
        metadata=_build_metadata(aoi, start_date, end_date, max_cloud_cover, config.cdse_collection),
        error=None,
    )
