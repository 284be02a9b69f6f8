# config.py
"""
Configuration management for the crop health service.
Loads environment variables and defines the classification policy and
the request defaults shared by the API and the orchestrator.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

from .logger_config import get_logger

logger = get_logger("config")

# Load .env file if present
load_dotenv()


# Request defaults for /satellite/health
DEFAULT_MAX_CLOUD_COVER = 35.0
DEFAULT_MAX_RESULTS = 3
DEFAULT_CURRENT_WINDOW_DAYS = 35
DEFAULT_BASELINE_OFFSET_DAYS = 90
DEFAULT_BASELINE_WINDOW_DAYS = 35
DEFAULT_PRECISION_MODE = "high_accuracy"

# Cache TTL bounds, in hours
MIN_CACHE_TTL_HOURS = 1
MAX_CACHE_TTL_HOURS = 168

# Request defaults for /satellite/ingest
DEFAULT_INGEST_MAX_CLOUD_COVER = 25.0
DEFAULT_INGEST_LOOKBACK_DAYS = 120


@dataclass(frozen=True)
class LegendBand:
    """One colored band of the zone legend."""
    key: str
    label: str
    score_min: int
    score_max: int
    color: str


@dataclass(frozen=True)
class HealthPolicy:
    """
    Thresholds used to turn NDVI estimates into scores, zone statuses and trends.

    The composer never hard-codes these numbers; pass a different policy to
    tune classification without touching the pipeline.
    """
    # NDVI -> 0..100 score: clamp((ndvi - ndvi_floor) / ndvi_span, 0, 1) * 100
    ndvi_floor: float = 0.15
    ndvi_span: float = 0.65

    # Zone status cut-offs on the 0..100 score
    healthy_min_score: int = 65
    watch_min_score: int = 40

    # Score delta (points) that counts as a trend
    trend_delta: int = 4

    # Overall score labels
    excellent_min_score: int = 75
    good_min_score: int = 60

    colors: Dict[str, str] = field(default_factory=lambda: {
        "healthy": "#22c55e",
        "watch": "#f59e0b",
        "critical": "#ef4444",
    })

    def legend(self) -> List[LegendBand]:
        return [
            LegendBand("healthy", "Healthy", self.healthy_min_score, 100, self.colors["healthy"]),
            LegendBand("watch", "Watch", self.watch_min_score, self.healthy_min_score - 1, self.colors["watch"]),
            LegendBand("critical", "Critical", 0, self.watch_min_score - 1, self.colors["critical"]),
        ]


DEFAULT_HEALTH_POLICY = HealthPolicy()


# NDVI raster classes rendered by the Process API evalscript:
# (upper NDVI bound, class name, RGB). The last class has no upper bound.
NDVI_RASTER_CLASSES: List[Tuple[Optional[float], str, Tuple[int, int, int]]] = [
    (0.2, "stressed", (239, 68, 68)),
    (0.4, "moderate", (245, 158, 11)),
    (0.6, "developing", (132, 204, 22)),
    (None, "healthy", (34, 197, 94)),
]
NDVI_RASTER_ALPHA = 170


@dataclass
class Settings:
    """Application settings loaded from environment variables."""

    # Copernicus Data Space Ecosystem (Sentinel Hub APIs)
    cdse_client_id: str = field(default_factory=lambda: os.getenv("CDSE_CLIENT_ID", ""))
    cdse_client_secret: str = field(default_factory=lambda: os.getenv("CDSE_CLIENT_SECRET", ""))
    cdse_token_url: str = field(default_factory=lambda: os.getenv(
        "CDSE_TOKEN_URL",
        "https://identity.dataspace.copernicus.eu/auth/realms/CDSE/protocol/openid-connect/token"
    ))
    cdse_catalog_url: str = field(default_factory=lambda: os.getenv(
        "CDSE_CATALOG_URL",
        "https://sh.dataspace.copernicus.eu/api/v1/catalog/1.0.0/search"
    ))
    cdse_process_url: str = field(default_factory=lambda: os.getenv(
        "CDSE_PROCESS_URL",
        "https://sh.dataspace.copernicus.eu/api/v1/process"
    ))
    cdse_collection: str = field(default_factory=lambda: os.getenv("CDSE_COLLECTION", "sentinel-2-l2a"))

    # Database
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./crophealth.db"))

    # Rate limiting
    cdse_rate_limit_per_min: int = field(default_factory=lambda: int(os.getenv("CDSE_RATE_LIMIT_PER_MIN", "60")))

    # Timeouts
    default_timeout_seconds: int = field(default_factory=lambda: int(os.getenv("DEFAULT_TIMEOUT_SECONDS", "12")))
    cdse_timeout_seconds: int = field(default_factory=lambda: int(os.getenv("CDSE_TIMEOUT_SECONDS", "30")))

    # Token refresh happens this many seconds before expiry
    token_skew_seconds: int = field(default_factory=lambda: int(os.getenv("TOKEN_SKEW_SECONDS", "10")))

    # Cache
    default_cache_ttl_hours: int = field(default_factory=lambda: int(os.getenv("DEFAULT_CACHE_TTL_HOURS", "24")))

    # Raster output size (pixels, both axes)
    raster_image_size: int = field(default_factory=lambda: int(os.getenv("RASTER_IMAGE_SIZE", "384")))

    health_policy: HealthPolicy = field(default_factory=HealthPolicy)

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of warnings.
        """
        warnings: List[str] = []

        missing = validate_cdse_env(self)
        if missing:
            warnings.append(f"{missing} Live scenes and NDVI rasters are disabled; sample scenes will be served.")

        if self.database_url.startswith("sqlite"):
            warnings.append("DATABASE_URL uses SQLite - fine for development, use PostgreSQL in production")

        return warnings


def validate_cdse_env(config: Optional[Settings] = None) -> Optional[str]:
    """
    Check that CDSE credentials are configured.

    Returns:
        None when everything is present, otherwise a message naming the missing variable
    """
    config = config or settings

    if not config.cdse_client_id:
        return "CDSE_CLIENT_ID is missing in environment."
    if not config.cdse_client_secret:
        return "CDSE_CLIENT_SECRET is missing in environment."
    if not config.cdse_token_url:
        return "CDSE_TOKEN_URL is missing in environment."
    return None


# Global settings instance
settings = Settings()

# Log configuration warnings on import
_warnings = settings.validate()
for w in _warnings:
    logger.warning(w)
