"""
Crop health request orchestrator.

Runs one /satellite/health request through

    CACHE_CHECK -> LIVE_ANALYSIS -> RASTER_DECORATION -> CACHE_WRITE -> RESPOND

with two escape edges out of LIVE_ANALYSIS: STALE_RESPONSE (serve the last
cached entry even if expired) and ERROR_RESPONSE (nothing usable left).
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generic, Mapping, Optional, Tuple, TypeVar

from .aoi_resolver import ResolvedAoi, resolve_aoi
from .api_models import (
    AreaOfInterest,
    CacheEntry,
    CacheStatus,
    HealthData,
    HealthEnvelope,
    HealthFailureData,
    HealthInsight,
    NdviRasterOverlay,
    RasterResult,
    ResponseMetadata,
    SceneMetadata,
    SourceScene,
)
from .cache_store import CacheStore, build_cache_key, is_fresh
from .config import (
    DEFAULT_BASELINE_OFFSET_DAYS,
    DEFAULT_BASELINE_WINDOW_DAYS,
    DEFAULT_CURRENT_WINDOW_DAYS,
    DEFAULT_MAX_CLOUD_COVER,
    DEFAULT_MAX_RESULTS,
    DEFAULT_PRECISION_MODE,
    MAX_CACHE_TTL_HOURS,
    MIN_CACHE_TTL_HOURS,
    settings,
)
from .errors import ValidationError
from .health_composer import AnalysisRequest, CompositionOutcome, HealthComposer
from .logger_config import get_logger
from .profile_store import ProfileStore
from .raster_processor import generate_ndvi_raster
from .utils import clamp, get_param, parse_bool, parse_int, parse_number, utcnow

logger = get_logger("orchestrator")

PRECISION_MODES = ("estimated", "high_accuracy")
MAX_RESULTS_LIMIT = 20

RASTER_DISCLAIMER = (
    "High-accuracy NDVI raster is rendered from Sentinel-2 B08/B04 for the selected scene. "
    "Zone bands are retained for quick summary."
)
SIMULATED_RASTER_FAILURE = "NDVI process simulation was triggered. Showing estimated zone overlay instead."
RASTER_UNAVAILABLE = "High-accuracy NDVI is unavailable right now. Showing estimated zone overlay instead."
RASTER_UNAVAILABLE_FOR_SCENE = "High-accuracy NDVI is unavailable for this scene. Showing estimated health summary."
STALE_CACHE_REASON = "Live refresh failed. Showing cached data for continuity."
ANALYSIS_FAILED = "Satellite health analysis failed"

T = TypeVar("T")

RasterRenderer = Callable[..., Awaitable[RasterResult]]


@dataclass(frozen=True)
class StepResult(Generic[T]):
    """Outcome of one pipeline step: a value, or the reason there is none."""
    ok: bool
    value: Optional[T] = None
    reason: Optional[str] = None
    status_code: int = 500

    @classmethod
    def success(cls, value: T) -> "StepResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: str, status_code: int = 500) -> "StepResult[T]":
        return cls(ok=False, reason=reason, status_code=status_code)


def clamp_ttl_hours(hours: float) -> int:
    return int(clamp(math.floor(hours + 0.5), MIN_CACHE_TTL_HOURS, MAX_CACHE_TTL_HOURS))


@dataclass(frozen=True)
class HealthRequest:
    """Validated /satellite/health parameters."""
    user_id: Optional[str] = None
    bbox: Optional[str] = None
    aoi_id: Optional[str] = None
    aoi_name: Optional[str] = None
    allow_fallback: bool = True
    max_cloud_cover: float = DEFAULT_MAX_CLOUD_COVER
    max_results: int = DEFAULT_MAX_RESULTS
    current_window_days: int = DEFAULT_CURRENT_WINDOW_DAYS
    baseline_offset_days: int = DEFAULT_BASELINE_OFFSET_DAYS
    baseline_window_days: int = DEFAULT_BASELINE_WINDOW_DAYS
    precision_mode: str = DEFAULT_PRECISION_MODE
    use_cache: bool = True
    force_refresh: bool = False
    cache_ttl_hours: int = field(default_factory=lambda: clamp_ttl_hours(settings.default_cache_ttl_hours))
    simulate_ndvi_failure: bool = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "HealthRequest":
        """
        Build a request from camelCase query/body parameters.

        Raises:
            ValidationError: malformed or out-of-range numbers, booleans or precision mode.
                An unusable bbox is not an error; the AOI resolver moves on to the next tier.
        """
        precision_mode = (get_param(params, "precisionMode") or "").strip().lower() or DEFAULT_PRECISION_MODE
        if precision_mode not in PRECISION_MODES:
            raise ValidationError(f"precisionMode must be one of {', '.join(PRECISION_MODES)}")

        return cls(
            user_id=(get_param(params, "userId") or "").strip() or None,
            bbox=get_param(params, "bbox"),
            aoi_id=get_param(params, "aoiId"),
            aoi_name=get_param(params, "aoiName"),
            allow_fallback=parse_bool(get_param(params, "allowFallback"), True, "allowFallback"),
            max_cloud_cover=parse_number(
                get_param(params, "maxCloudCover"), DEFAULT_MAX_CLOUD_COVER, "maxCloudCover", 0, 100
            ),
            max_results=parse_int(
                get_param(params, "maxResults"), DEFAULT_MAX_RESULTS, "maxResults", 1, MAX_RESULTS_LIMIT
            ),
            current_window_days=parse_int(
                get_param(params, "currentWindowDays"), DEFAULT_CURRENT_WINDOW_DAYS, "currentWindowDays", 1
            ),
            baseline_offset_days=parse_int(
                get_param(params, "baselineOffsetDays"), DEFAULT_BASELINE_OFFSET_DAYS, "baselineOffsetDays", 0
            ),
            baseline_window_days=parse_int(
                get_param(params, "baselineWindowDays"), DEFAULT_BASELINE_WINDOW_DAYS, "baselineWindowDays", 1
            ),
            precision_mode=precision_mode,
            use_cache=parse_bool(get_param(params, "useCache"), True, "useCache"),
            force_refresh=parse_bool(get_param(params, "forceRefresh"), False, "forceRefresh"),
            cache_ttl_hours=clamp_ttl_hours(
                parse_number(get_param(params, "cacheTtlHours"), settings.default_cache_ttl_hours, "cacheTtlHours")
            ),
            simulate_ndvi_failure=parse_bool(get_param(params, "simulateNdviFailure"), False, "simulateNdviFailure"),
        )


def raster_uncertainty_note(scene: Optional[SceneMetadata]) -> str:
    cloud_text = ""
    if scene is not None:
        cloud_text = f" Scene cloud cover was {math.floor(scene.cloud_cover_percent + 0.5)}%."
    return (
        "High-accuracy NDVI raster is generated from Sentinel-2 B08/B04 for this captured scene."
        f"{cloud_text} Validate major interventions with a quick field check."
    )


def _source_scene(health: HealthInsight) -> SourceScene:
    scene = health.current_scene
    return SourceScene(
        scene_id=scene.scene_id if scene else None,
        captured_at=scene.captured_at if scene else None,
    )


class HealthOrchestrator:
    """
    Coordinates AOI resolution, cache, composer and raster processor for one
    request. Collaborators are injected so each can be replaced in tests.
    """

    def __init__(
        self,
        cache_store: Optional[CacheStore] = None,
        profile_store: Optional[ProfileStore] = None,
        composer: Optional[HealthComposer] = None,
        raster: RasterRenderer = generate_ndvi_raster,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache_store = cache_store or CacheStore()
        self.profile_store = profile_store or ProfileStore()
        self.composer = composer or HealthComposer(policy=settings.health_policy)
        self._raster = raster
        self._clock = clock

    async def run(self, request: HealthRequest) -> Tuple[int, HealthEnvelope]:
        """Returns (HTTP status, envelope)."""
        now = self._clock()
        resolved = await resolve_aoi(
            user_id=request.user_id,
            query_bbox=request.bbox,
            aoi_id=request.aoi_id,
            aoi_name=request.aoi_name,
            profile_store=self.profile_store,
        )
        cache_key = build_cache_key(
            request.user_id,
            resolved.aoi.bbox,
            request.precision_mode,
            request.max_cloud_cover,
            request.max_results,
        )

        # CACHE_CHECK
        cached: Optional[CacheEntry] = None
        if request.use_cache:
            cached = await self.cache_store.get(request.user_id, cache_key)
            if cached and not request.force_refresh and is_fresh(cached, now):
                logger.info(f"Cache hit for key={cache_key}")
                return 200, self._cached_response(cached, request, cache_key, stale=False)

        # LIVE_ANALYSIS
        analysis = await self._analyze(request, resolved)
        if not analysis.ok:
            if request.use_cache and request.allow_fallback and cached:
                logger.info(f"Serving stale cache for key={cache_key} after failed analysis")
                return 200, self._cached_response(cached, request, cache_key, stale=True)
            return self._error_response(analysis, request, cache_key, cached)

        outcome: CompositionOutcome = analysis.value
        health = await self._decorate(outcome.insight, request, resolved.aoi)

        # CACHE_WRITE
        expires_at = now + timedelta(hours=request.cache_ttl_hours)
        metadata = ResponseMetadata(
            **dict(outcome.metadata),
            precision_mode=request.precision_mode,
            source_scene=_source_scene(health),
            cache=CacheStatus(
                hit=False,
                key=cache_key,
                expires_at=expires_at if request.use_cache else None,
                forced=request.force_refresh,
                stale_fallback_used=False,
            ),
        )

        if request.use_cache:
            await self.cache_store.put(CacheEntry(
                cache_key=cache_key,
                user_id=request.user_id,
                aoi=resolved.aoi,
                precision_mode=request.precision_mode,
                data_source=outcome.data_source,
                source_scene_id=metadata.source_scene.scene_id,
                source_captured_at=metadata.source_scene.captured_at,
                cached_at=now,
                expires_at=expires_at,
                health_payload=health,
                metadata=metadata,
            ))

        # RESPOND
        return 200, HealthEnvelope(
            success=True,
            data=HealthData(health=health, metadata=metadata, data_source=outcome.data_source),
            error=None,
        )

    async def _analyze(self, request: HealthRequest, resolved: ResolvedAoi) -> StepResult[CompositionOutcome]:
        outcome = await self.composer.compose(AnalysisRequest(
            aoi=resolved.aoi,
            aoi_source=resolved.aoi_source,
            geometry_used=resolved.geometry_used,
            farm_boundary_polygon=resolved.farm_boundary_polygon,
            allow_fallback=request.allow_fallback,
            max_cloud_cover=request.max_cloud_cover,
            max_results=request.max_results,
            current_window_days=request.current_window_days,
            baseline_offset_days=request.baseline_offset_days,
            baseline_window_days=request.baseline_window_days,
        ))
        if outcome.success and outcome.insight is not None:
            return StepResult.success(outcome)

        # Keep the outcome so the error response can still report what was searched
        return StepResult(
            ok=False,
            value=outcome,
            reason=outcome.error or ANALYSIS_FAILED,
            status_code=outcome.status_code,
        )

    async def _render_raster(self, health: HealthInsight, request: HealthRequest, aoi: AreaOfInterest) -> StepResult[RasterResult]:
        if request.simulate_ndvi_failure:
            return StepResult.failure(SIMULATED_RASTER_FAILURE)

        raster = await self._raster(
            aoi=aoi,
            scene=health.current_scene,
            max_cloud_cover=request.max_cloud_cover,
            width=settings.raster_image_size,
            height=settings.raster_image_size,
        )
        if raster.success and raster.image_data_url:
            return StepResult.success(raster)
        return StepResult.failure(raster.error or RASTER_UNAVAILABLE)

    async def _decorate(self, health: HealthInsight, request: HealthRequest, aoi: AreaOfInterest) -> HealthInsight:
        """RASTER_DECORATION: settle the overlay strategy for the precision mode."""
        overlay = health.map_overlay

        if request.precision_mode != "high_accuracy":
            if overlay is None:
                return health.model_copy(update={"high_accuracy_unavailable_reason": None})
            return health.model_copy(update={
                "map_overlay": overlay.as_estimated(),
                "high_accuracy_unavailable_reason": None,
            })

        if health.current_scene is None or overlay is None:
            return health.model_copy(update={
                "high_accuracy_unavailable_reason": health.high_accuracy_unavailable_reason or RASTER_UNAVAILABLE_FOR_SCENE
            })

        step = await self._render_raster(health, request, aoi)
        if step.ok:
            raster: RasterResult = step.value
            ndvi_overlay: NdviRasterOverlay = overlay.with_raster(
                image_data_url=raster.image_data_url,
                image_bbox=raster.image_bbox,
                disclaimer=RASTER_DISCLAIMER,
            )
            return health.model_copy(update={
                "map_overlay": ndvi_overlay,
                "uncertainty_note": raster_uncertainty_note(health.current_scene),
                "high_accuracy_unavailable_reason": None,
            })

        logger.info(f"High-accuracy overlay downgraded to estimated zones: {step.reason}")
        return health.model_copy(update={
            "map_overlay": overlay.as_estimated(),
            "high_accuracy_unavailable_reason": step.reason,
        })

    def _cached_response(self, entry: CacheEntry, request: HealthRequest, cache_key: str, stale: bool) -> HealthEnvelope:
        """Fresh hit (health unchanged) or STALE_RESPONSE (reason always populated)."""
        health = entry.health_payload
        if stale:
            health = health.model_copy(update={
                "high_accuracy_unavailable_reason": health.high_accuracy_unavailable_reason or STALE_CACHE_REASON
            })

        metadata = entry.metadata.model_copy(update={
            "precision_mode": request.precision_mode,
            "cache": CacheStatus(
                hit=True,
                key=cache_key,
                expires_at=entry.expires_at,
                forced=request.force_refresh if stale else False,
                stale_fallback_used=stale,
            ),
        })

        return HealthEnvelope(
            success=True,
            data=HealthData(health=health, metadata=metadata, data_source=entry.data_source),
            error=None,
        )

    def _error_response(
        self,
        analysis: StepResult[CompositionOutcome],
        request: HealthRequest,
        cache_key: str,
        cached: Optional[CacheEntry],
    ) -> Tuple[int, HealthEnvelope]:
        """ERROR_RESPONSE: every fallback is exhausted."""
        outcome = analysis.value
        metadata = ResponseMetadata(
            **dict(outcome.metadata),
            precision_mode=request.precision_mode,
            source_scene=SourceScene(),
            cache=CacheStatus(
                hit=False,
                key=cache_key,
                expires_at=cached.expires_at if cached else None,
                forced=request.force_refresh,
                stale_fallback_used=False,
            ),
        )
        logger.warning(f"Health analysis failed for key={cache_key} with no usable cache")

        return analysis.status_code, HealthEnvelope(
            success=False,
            data=HealthFailureData(metadata=metadata, data_source=outcome.data_source),
            error=analysis.reason,
        )
