"""
NDVI raster generation through the CDSE Process API.

Renders a colour-classified NDVI PNG for exactly the acquisition day of a
chosen scene and returns it as a data URL.
"""

import base64
from datetime import datetime, time, timezone
from typing import Optional, Tuple

import httpx

from .api_models import AreaOfInterest, RasterResult, SceneMetadata
from .config import NDVI_RASTER_ALPHA, NDVI_RASTER_CLASSES, Settings, settings, validate_cdse_env
from .errors import SatelliteServiceError, TransportError
from .logger_config import get_logger
from .token_broker import TokenBroker, token_broker
from .utils import clamp, rate_limit, utcnow

logger = get_logger("raster_processor")

MIN_IMAGE_SIZE = 128
MAX_IMAGE_SIZE = 1024


def build_ndvi_evalscript() -> str:
    """Evalscript: (B08 - B04) / (B08 + B04) bucketed into the raster classes."""
    branches = []
    for index, (upper, _name, (r, g, b)) in enumerate(NDVI_RASTER_CLASSES):
        assignment = f"r = {r}; g = {g}; b = {b};"
        if upper is None:
            branches.append(f"  }} else {{\n    {assignment}\n  }}")
        elif index == 0:
            branches.append(f"  if (ndvi < {upper}) {{\n    {assignment}")
        else:
            branches.append(f"  }} else if (ndvi < {upper}) {{\n    {assignment}")

    return f"""//VERSION=3
function setup() {{
  return {{
    input: ["B04", "B08", "dataMask"],
    output: {{ bands: 4, sampleType: "UINT8" }}
  }};
}}

function evaluatePixel(sample) {{
  if (sample.dataMask === 0) {{
    return [0, 0, 0, 0];
  }}

  var ndvi = (sample.B08 - sample.B04) / (sample.B08 + sample.B04 + 0.000001);
  var r, g, b;
{chr(10).join(branches)}

  return [r, g, b, {NDVI_RASTER_ALPHA}];
}}"""


EVALSCRIPT_NDVI = build_ndvi_evalscript()


def utc_day_range(captured_at: Optional[datetime]) -> Tuple[str, str]:
    """00:00:00Z..23:59:59Z of the capture day; today when the capture time is unknown."""
    day = captured_at.astimezone(timezone.utc).date() if captured_at else utcnow().date()
    start = datetime.combine(day, time(0, 0, 0), tzinfo=timezone.utc)
    end = datetime.combine(day, time(23, 59, 59), tzinfo=timezone.utc)
    return start.strftime("%Y-%m-%dT%H:%M:%SZ"), end.strftime("%Y-%m-%dT%H:%M:%SZ")


def _failure(aoi: AreaOfInterest, reason: str) -> RasterResult:
    return RasterResult(success=False, image_data_url=None, image_bbox=aoi.bbox, error=reason)


async def generate_ndvi_raster(
    aoi: AreaOfInterest,
    scene: SceneMetadata,
    max_cloud_cover: float = 35,
    width: Optional[int] = None,
    height: Optional[int] = None,
    broker: Optional[TokenBroker] = None,
    config: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RasterResult:
    """
    Request a rendered NDVI image for one scene over the AOI.

    Never raises: any failure comes back as success=False with a readable
    reason and the requested bbox.
    """
    config = config or settings
    broker = broker or token_broker
    logger.info(f"Initiating NDVI raster for scene={scene.scene_id}, bbox={aoi.bbox}")
    start_time = utcnow()

    missing = validate_cdse_env(config)
    if missing:
        logger.warning(f"NDVI raster skipped: {missing}")
        return _failure(aoi, missing)

    default_size = config.raster_image_size
    width_px = int(clamp(round(width or default_size), MIN_IMAGE_SIZE, MAX_IMAGE_SIZE))
    height_px = int(clamp(round(height or default_size), MIN_IMAGE_SIZE, MAX_IMAGE_SIZE))
    cloud_ceiling = int(clamp(round(max_cloud_cover), 0, 100))
    time_from, time_to = utc_day_range(scene.captured_at)

    request_body = {
        "input": {
            "bounds": {
                "bbox": list(aoi.bbox),
                "properties": {"crs": "http://www.opengis.net/def/crs/EPSG/0/4326"}
            },
            "data": [{
                "type": config.cdse_collection,
                "dataFilter": {
                    "timeRange": {"from": time_from, "to": time_to},
                    "maxCloudCoverage": cloud_ceiling,
                    "mosaickingOrder": "mostRecent"
                }
            }]
        },
        "output": {
            "width": width_px,
            "height": height_px,
            "responses": [{
                "identifier": "default",
                "format": {"type": "image/png"}
            }]
        },
        "evalscript": EVALSCRIPT_NDVI
    }

    try:
        token = await broker.get_token()
        await rate_limit("cdse")

        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json"
        }

        async with httpx.AsyncClient(timeout=config.cdse_timeout_seconds, transport=transport) as client:
            response = await client.post(config.cdse_process_url, json=request_body, headers=headers)

        if response.status_code == 401:
            broker.invalidate()

        if response.status_code >= 400:
            raise TransportError(
                f"CDSE NDVI process failed ({response.status_code}): {response.text[:200]}",
                source="cdse_process",
                status=response.status_code
            )

        image_bytes = response.content
        if not image_bytes:
            raise TransportError("CDSE NDVI process returned an empty image.", source="cdse_process")

    except SatelliteServiceError as e:
        logger.warning(f"NDVI raster unavailable for scene={scene.scene_id}: {e}")
        return _failure(aoi, str(e))
    except httpx.TimeoutException as e:
        logger.warning(f"NDVI raster timed out for scene={scene.scene_id}: {e}")
        return _failure(aoi, f"CDSE NDVI process timed out: {e}")
    except httpx.HTTPError as e:
        logger.warning(f"NDVI raster request failed for scene={scene.scene_id}: {e}")
        return _failure(aoi, f"CDSE NDVI process failed: {e}")

    content_type = response.headers.get("content-type", "image/png").split(";")[0].strip()
    mime_type = content_type if content_type.startswith("image/") else "image/png"
    image_b64 = base64.b64encode(image_bytes).decode("utf-8")

    elapsed = (utcnow() - start_time).total_seconds()
    logger.info(f"NDVI raster returned {len(image_bytes)/1024:.1f}KB {width_px}x{height_px} image in {elapsed:.2f}s")

    return RasterResult(
        success=True,
        image_data_url=f"data:{mime_type};base64,{image_b64}",
        image_bbox=aoi.bbox,
        error=None,
    )
