"""
Shared utilities for the crop health service.
Includes rate limiting, bbox parsing and geometry, time helpers and query
parameter parsing.
"""

import asyncio
import hashlib
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .config import settings
from .errors import ValidationError
from .logger_config import get_logger

logger = get_logger("utils")

# Decimal places kept for bbox coordinates; shared by AOI resolution and cache keys
BBOX_PRECISION = 6


# ============== Rate Limiter ==============

class TokenBucketRateLimiter:
    """
    Simple token bucket rate limiter for provider calls.
    Safe for concurrent coroutines through an asyncio lock.
    """

    def __init__(self, tokens_per_minute: int, bucket_size: Optional[int] = None):
        self.tokens_per_minute = tokens_per_minute
        self.bucket_size = bucket_size or tokens_per_minute
        self.tokens = float(self.bucket_size)
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, tokens: int = 1) -> None:
        """
        Wait until tokens are available, then consume them.
        """
        async with self._lock:
            while True:
                now = time.monotonic()
                elapsed = now - self.last_update

                self.tokens = min(
                    self.bucket_size,
                    self.tokens + elapsed * (self.tokens_per_minute / 60.0)
                )
                self.last_update = now

                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return

                wait_time = (tokens - self.tokens) / (self.tokens_per_minute / 60.0)
                await asyncio.sleep(min(wait_time, 1.0))


rate_limiters: Dict[str, TokenBucketRateLimiter] = {
    "cdse": TokenBucketRateLimiter(tokens_per_minute=settings.cdse_rate_limit_per_min),
}


async def rate_limit(service: str) -> None:
    """
    Apply rate limiting for a service.
    """
    if service in rate_limiters:
        await rate_limiters[service].acquire()


# ============== BBox Helpers ==============

def parse_bbox_string(bbox_str: str) -> Tuple[float, float, float, float]:
    """
    Parse a bbox string like "minLon,minLat,maxLon,maxLat" into a tuple.

    Raises:
        ValueError: if the string does not hold exactly four numbers
    """
    parts = [float(x.strip()) for x in bbox_str.split(',')]
    if len(parts) != 4:
        raise ValueError("BBox must have exactly 4 comma-separated values")
    return tuple(parts)


def validate_bbox(bbox: tuple) -> Tuple[bool, Optional[str]]:
    """
    Validate a bounding box.

    Args:
        bbox: (min_lon, min_lat, max_lon, max_lat)

    Returns:
        (is_valid, error_message)
    """
    if len(bbox) != 4:
        return False, "BBox must have exactly 4 values"

    if not all(math.isfinite(value) for value in bbox):
        return False, "BBox values must be finite numbers"

    min_lon, min_lat, max_lon, max_lat = bbox

    if not (-180 <= min_lon <= 180) or not (-180 <= max_lon <= 180):
        return False, "Longitude must be between -180 and 180"

    if not (-90 <= min_lat <= 90) or not (-90 <= max_lat <= 90):
        return False, "Latitude must be between -90 and 90"

    if not min_lon < max_lon:
        return False, "min_lon must be < max_lon"

    if not min_lat < max_lat:
        return False, "min_lat must be < max_lat"

    return True, None


def round_bbox(bbox: tuple, digits: int = BBOX_PRECISION) -> Tuple[float, float, float, float]:
    """Round every coordinate so float jitter does not produce distinct boxes."""
    return tuple(round(float(value), digits) for value in bbox)


def bbox_to_polygon(bbox: tuple) -> dict:
    """Convert bbox to a closed GeoJSON Polygon, starting at the north-west corner."""
    min_lon, min_lat, max_lon, max_lat = bbox
    return {
        "type": "Polygon",
        "coordinates": [[
            [min_lon, max_lat],
            [max_lon, max_lat],
            [max_lon, min_lat],
            [min_lon, min_lat],
            [min_lon, max_lat]
        ]]
    }


def stable_hash(value: str) -> int:
    """Process-independent integer hash (Python's hash() is salted per process)."""
    return int(hashlib.md5(value.encode()).hexdigest()[:8], 16)


# ============== Numeric / Time Helpers ==============

def clamp(value: float, min_value: float, max_value: float) -> float:
    return min(max_value, max(min_value, value))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: str) -> Optional[datetime]:
    """Parse an ISO8601 timestamp (accepting a trailing Z); None when unparseable."""
    if not value or not isinstance(value, str):
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    except ValueError:
        return None


# ============== Query Parameter Parsing ==============

TRUE_VALUES = {"1", "true", "yes", "y"}
FALSE_VALUES = {"0", "false", "no", "n"}


def parse_bool(raw: Optional[str], default: bool, name: str = "value") -> bool:
    """Parse a boolean query parameter; blank means default."""
    if raw is None or not str(raw).strip():
        return default
    normalized = str(raw).strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ValidationError(f"{name} must be a boolean, got '{raw}'")


def parse_number(
    raw: Optional[str],
    default: float,
    name: str = "value",
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
) -> float:
    """Parse a finite number query parameter within optional bounds; blank means default."""
    if raw is None or not str(raw).strip():
        return default
    try:
        value = float(str(raw).strip())
    except ValueError:
        raise ValidationError(f"{name} must be a number, got '{raw}'")
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite")
    if min_value is not None and value < min_value:
        raise ValidationError(f"{name} must be >= {min_value:g}")
    if max_value is not None and value > max_value:
        raise ValidationError(f"{name} must be <= {max_value:g}")
    return value


def parse_int(
    raw: Optional[str],
    default: int,
    name: str = "value",
    min_value: Optional[int] = None,
    max_value: Optional[int] = None,
) -> int:
    """Like parse_number, but rejects fractional values."""
    value = parse_number(raw, default, name, min_value, max_value)
    if value != int(value):
        raise ValidationError(f"{name} must be a whole number")
    return int(value)


def format_number(value: float) -> str:
    """Render 35.0 as '35' and 12.5 as '12.5' without dropping significant digits."""
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return repr(number)


def ring_list(coordinates: List) -> List:
    """Deep-copy polygon coordinates into plain lists of floats."""
    return [[[float(c) for c in point] for point in ring] for ring in coordinates]


def get_param(params: Mapping[str, Any], key: str) -> Optional[str]:
    """
    Read a query or JSON body value as text. JSON booleans become
    'true'/'false' and JSON arrays are joined with commas.
    """
    value = params.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(str(item) for item in value)
    return str(value)
