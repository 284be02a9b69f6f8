"""
Health Insight Composer.

Compares the newest scene of the current window against the scenes of a
baseline window and turns the NDVI estimates into scores, zones, stress
signals, recommendations and alerts. Classification thresholds come from a
HealthPolicy so they can be tuned and tested independently.
"""

import asyncio
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, List, NamedTuple, Optional, Sequence, Tuple

from .api_models import (
    AnalysisMetadata,
    AoiSource,
    AreaOfInterest,
    DateRange,
    EstimatedZonesOverlay,
    HealthAlert,
    HealthInsight,
    HealthZone,
    IngestResult,
    LegendItem,
    PolygonGeometry,
    Recommendation,
    SceneMetadata,
    StressSignal,
)
from .config import (
    DEFAULT_BASELINE_OFFSET_DAYS,
    DEFAULT_BASELINE_WINDOW_DAYS,
    DEFAULT_CURRENT_WINDOW_DAYS,
    DEFAULT_HEALTH_POLICY,
    DEFAULT_MAX_CLOUD_COVER,
    DEFAULT_MAX_RESULTS,
    HealthPolicy,
)
from .errors import EmptyResultError, SatelliteServiceError
from .logger_config import get_logger
from .sample_data import DEFAULT_DEMO_AOI, NDVI_REFERENCE_BY_SCENE, normalize_scene_id
from .scene_catalog import search_scenes
from .utils import bbox_to_polygon, clamp, stable_hash, utcnow

logger = get_logger("health_composer")

ZONE_LABELS = ("North Zone", "Central Zone", "South Zone")

ESTIMATED_DISCLAIMER = (
    "Zone colors are model-estimated from metadata/reference NDVI trends, "
    "not true per-pixel NDVI raster values."
)

NO_CURRENT_SCENES_ERROR = "No current satellite scenes available for health analysis."

SceneSearch = Callable[..., Awaitable[IngestResult]]


class SceneEstimate(NamedTuple):
    ndvi_estimate: float
    zone_ndvi: Tuple[float, float, float]
    confidence: float
    method: str  # reference_seed | metadata_proxy


@dataclass(frozen=True)
class AnalysisRequest:
    """Inputs of one composition run."""
    aoi: AreaOfInterest = DEFAULT_DEMO_AOI
    aoi_source: AoiSource = "demo_fallback"
    geometry_used: bool = False
    farm_boundary_polygon: Optional[PolygonGeometry] = None
    allow_fallback: bool = True
    max_cloud_cover: float = DEFAULT_MAX_CLOUD_COVER
    max_results: int = DEFAULT_MAX_RESULTS
    current_window_days: int = DEFAULT_CURRENT_WINDOW_DAYS
    baseline_offset_days: int = DEFAULT_BASELINE_OFFSET_DAYS
    baseline_window_days: int = DEFAULT_BASELINE_WINDOW_DAYS


@dataclass(frozen=True)
class CompositionOutcome:
    success: bool
    data_source: str
    insight: Optional[HealthInsight]
    metadata: AnalysisMetadata
    error: Optional[str] = None
    status_code: int = 500


# ============== Scoring ==============

def ndvi_to_score(ndvi: float, policy: HealthPolicy = DEFAULT_HEALTH_POLICY) -> int:
    return int(round(clamp((ndvi - policy.ndvi_floor) / policy.ndvi_span, 0, 1) * 100))


def score_to_label(score: int, policy: HealthPolicy = DEFAULT_HEALTH_POLICY) -> str:
    if score >= policy.excellent_min_score:
        return "excellent"
    if score >= policy.good_min_score:
        return "good"
    if score >= policy.watch_min_score:
        return "watch"
    return "critical"


def score_to_zone_status(score: int, policy: HealthPolicy = DEFAULT_HEALTH_POLICY) -> str:
    if score >= policy.healthy_min_score:
        return "healthy"
    if score >= policy.watch_min_score:
        return "watch"
    return "critical"


def delta_to_trend(delta: int, policy: HealthPolicy = DEFAULT_HEALTH_POLICY) -> str:
    if delta >= policy.trend_delta:
        return "up"
    if delta <= -policy.trend_delta:
        return "down"
    return "stable"


def _average(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ============== Scene estimates ==============

def _metadata_proxy(scene: SceneMetadata) -> SceneEstimate:
    """NDVI guess from capture month, a per-scene drift and cloud cover."""
    cloud = scene.cloud_cover_percent
    month = scene.captured_at.month
    season_curve = 0.5 + 0.13 * math.sin((month / 12) * 2 * math.pi)
    hash_drift = ((stable_hash(scene.scene_id) % 100) / 100 - 0.5) * 0.18
    cloud_penalty = clamp(cloud, 0, 80) / 320
    ndvi = clamp(season_curve + hash_drift - cloud_penalty, 0.12, 0.86)

    spread = 0.04 + (stable_hash(f"{scene.scene_id}-spread") % 8) / 100
    zones = (
        clamp(ndvi + spread * 0.8, 0.1, 0.9),
        clamp(ndvi - spread * 0.2, 0.1, 0.9),
        clamp(ndvi - spread, 0.1, 0.9),
    )
    confidence = clamp(0.58 - cloud / 180 + (0.08 if cloud < 15 else 0), 0.28, 0.76)

    return SceneEstimate(
        ndvi_estimate=round(ndvi, 3),
        zone_ndvi=tuple(round(z, 3) for z in zones),
        confidence=round(confidence, 2),
        method="metadata_proxy",
    )


def estimate_scene(scene: SceneMetadata) -> SceneEstimate:
    """Use the curated NDVI prior when the scene has one, else the metadata proxy."""
    reference = NDVI_REFERENCE_BY_SCENE.get(normalize_scene_id(scene.scene_id))
    if reference is None:
        return _metadata_proxy(scene)

    cloud = scene.cloud_cover_percent
    ndvi = clamp(reference.ndvi_mean - clamp(cloud, 0, 50) / 1000, 0.1, 0.9)
    zones = tuple(clamp(ndvi + delta, 0.1, 0.9) for delta in reference.zone_deltas)

    return SceneEstimate(
        ndvi_estimate=round(ndvi, 3),
        zone_ndvi=tuple(round(z, 3) for z in zones),
        confidence=round(clamp(0.84 - cloud / 220, 0.45, 0.9), 2),
        method="reference_seed",
    )


# ============== Narrative ==============

def build_stress_signals(
    current_score: int,
    score_delta: int,
    zone_scores: List[int],
    cloud_cover: float,
    confidence: float,
) -> List[StressSignal]:
    min_zone = min(zone_scores)
    zone_spread = max(zone_scores) - min_zone
    signals: List[StressSignal] = []

    if current_score < 45 or score_delta <= -10:
        signals.append(StressSignal(
            type="water_stress",
            confidence=round(clamp(0.55 + abs(score_delta) / 40, 0.45, 0.9), 2),
            message="Vegetation vigor has dropped. Check irrigation timing and soil moisture immediately.",
        ))

    if 40 <= current_score < 65 and zone_spread >= 15:
        signals.append(StressSignal(
            type="nutrient_stress",
            confidence=round(clamp(0.5 + zone_spread / 80, 0.4, 0.86), 2),
            message="Uneven canopy strength across zones indicates potential nutrient imbalance.",
        ))

    if min_zone < 35 and zone_spread >= 18:
        signals.append(StressSignal(
            type="pest_or_disease_risk",
            confidence=round(clamp(0.45 + (35 - min_zone) / 60, 0.35, 0.8), 2),
            message="One zone is significantly weaker. Prioritize visual scouting for pest or disease pockets.",
        ))

    if cloud_cover > 30 or confidence < 0.6:
        signals.append(StressSignal(
            type="cloud_uncertainty",
            confidence=round(clamp(0.5 + cloud_cover / 150, 0.45, 0.82), 2),
            message="Cloud/metadata limitations reduce certainty. Confirm with a quick physical field check.",
        ))

    if score_delta >= 8:
        signals.append(StressSignal(
            type="growth_recovery",
            confidence=round(clamp(0.55 + score_delta / 40, 0.45, 0.9), 2),
            message="Crop vigor is improving versus baseline. Maintain current agronomy practices.",
        ))

    return signals


# signal type -> (id, title, rationale, priority, confidence)
RECOMMENDATIONS_BY_SIGNAL = {
    "water_stress": (
        "water-balance-check", "Run soil moisture check today",
        "Recent satellite health dip suggests moisture deficit risk in one or more zones.", "high", 0.82,
    ),
    "nutrient_stress": (
        "nutrient-correction", "Do a targeted nutrient correction",
        "Zone variation pattern is consistent with uneven nutrient uptake.", "medium", 0.74,
    ),
    "pest_or_disease_risk": (
        "pest-scouting", "Scout weaker zone for pest/disease",
        "Localized low-vigor patch may indicate early pest or disease onset.", "high", 0.76,
    ),
    "cloud_uncertainty": (
        "field-verification", "Verify with field walk",
        "Observation confidence is reduced due to cloud/metadata uncertainty.", "medium", 0.68,
    ),
}

MAX_RECOMMENDATIONS = 4


def build_recommendations(signals: List[StressSignal]) -> List[Recommendation]:
    present = {signal.type for signal in signals}
    recommendations = [
        Recommendation(id=rec_id, title=title, rationale=rationale, priority=priority, confidence=confidence)
        for signal_type, (rec_id, title, rationale, priority, confidence) in RECOMMENDATIONS_BY_SIGNAL.items()
        if signal_type in present
    ]

    if not recommendations:
        recommendations.append(Recommendation(
            id="maintain-practice",
            title="Maintain current crop routine",
            rationale="No major stress pattern detected in current scan compared with baseline.",
            priority="low",
            confidence=0.7,
        ))

    return recommendations[:MAX_RECOMMENDATIONS]


def build_alerts(current_score: int, score_delta: int, confidence: float, cloud_cover: float) -> List[HealthAlert]:
    alerts: List[HealthAlert] = []

    if current_score < 35:
        alerts.append(HealthAlert(
            severity="critical",
            code="health-critical-drop",
            title="Critical crop health alert",
            message="Vegetation health score is below 35. Immediate field verification is recommended.",
        ))
    elif score_delta <= -12:
        alerts.append(HealthAlert(
            severity="warning",
            code="health-decline",
            title="Health decline detected",
            message="Current crop health dropped significantly versus baseline. Prioritize intervention.",
        ))

    if confidence < 0.6 or cloud_cover > 30:
        alerts.append(HealthAlert(
            severity="info",
            code="low-observation-confidence",
            title="Low confidence observation",
            message="Cloud/metadata constraints may impact precision. Validate with on-ground inspection.",
        ))

    return alerts


HEALTH_WORDS = {
    "excellent": "very strong",
    "good": "stable",
    "watch": "under watch",
    "critical": "critical",
}


def build_summary_text(current_score: int, score_delta: int, weakest_zone: HealthZone, score_label: str) -> str:
    if score_delta > 3:
        delta_text = f"{abs(score_delta)} points above baseline"
    elif score_delta < -3:
        delta_text = f"{abs(score_delta)} points below baseline"
    else:
        delta_text = "close to baseline"

    need = "immediate attention" if weakest_zone.status == "critical" else "monitoring"
    return (
        f"Crop health is {HEALTH_WORDS[score_label]} ({current_score}/100), {delta_text}. "
        f"{weakest_zone.label} needs {need}."
    )


def build_uncertainty_note(cloud_cover: float, used_proxy: bool, data_source: str) -> Optional[str]:
    if data_source == "fallback_sample":
        return "Insight generated from fallback sample scenes; verify with the latest live scan before major decisions."
    if cloud_cover > 25 or used_proxy:
        return (
            "This insight uses metadata-driven NDVI estimation. "
            "Cloud cover may reduce precision, so validate critical actions in-field."
        )
    return None


# ============== Geometry ==============

def zone_band_rings(bbox: tuple, zone_count: int) -> List[List[List[List[float]]]]:
    """Split the AOI into `zone_count` horizontal bands, north first."""
    min_lon, min_lat, max_lon, max_lat = bbox
    count = max(zone_count, 1)
    lat_step = (max_lat - min_lat) / count

    rings = []
    for index in range(count):
        top = max_lat - index * lat_step
        bottom = min_lat if index == count - 1 else max_lat - (index + 1) * lat_step
        rings.append([[
            [min_lon, top],
            [max_lon, top],
            [max_lon, bottom],
            [min_lon, bottom],
            [min_lon, top],
        ]])
    return rings


def build_legend(policy: HealthPolicy) -> List[LegendItem]:
    return [
        LegendItem(key=band.key, label=band.label, score_min=band.score_min, score_max=band.score_max, color=band.color)
        for band in policy.legend()
    ]


# ============== Composer ==============

def requested_ranges(
    now: datetime,
    current_window_days: int,
    baseline_offset_days: int,
    baseline_window_days: int,
) -> Tuple[DateRange, DateRange]:
    """Current window ends today; baseline window ends `baseline_offset_days` ago."""
    today: date = now.date()
    current = DateRange(start_date=today - timedelta(days=current_window_days), end_date=today)
    baseline = DateRange(
        start_date=today - timedelta(days=baseline_offset_days + baseline_window_days),
        end_date=today - timedelta(days=baseline_offset_days),
    )
    return current, baseline


class HealthComposer:
    """Builds a HealthInsight for one AOI from two catalog searches."""

    def __init__(
        self,
        policy: Optional[HealthPolicy] = None,
        search: SceneSearch = search_scenes,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.policy = policy or DEFAULT_HEALTH_POLICY
        self._search = search
        self._clock = clock

    async def compose(self, request: AnalysisRequest) -> CompositionOutcome:
        now = self._clock()
        current_range, baseline_range = requested_ranges(
            now, request.current_window_days, request.baseline_offset_days, request.baseline_window_days
        )

        current_result, baseline_result = await asyncio.gather(
            self._run_search(request, current_range),
            self._run_search(request, baseline_range),
            return_exceptions=True,
        )

        current_scenes = current_result.scenes if isinstance(current_result, IngestResult) else []
        baseline_scenes = baseline_result.scenes if isinstance(baseline_result, IngestResult) else []

        metadata = AnalysisMetadata(
            aoi=request.aoi,
            aoi_source=request.aoi_source,
            geometry_used=request.geometry_used,
            current_requested_range=current_range,
            baseline_requested_range=baseline_range,
            current_scene_count=len(current_scenes),
            baseline_scene_count=len(baseline_scenes),
        )

        if isinstance(current_result, BaseException):
            if not isinstance(current_result, SatelliteServiceError):
                raise current_result
            return CompositionOutcome(
                success=False,
                data_source="live",
                insight=None,
                metadata=metadata,
                error=str(current_result),
                status_code=current_result.status_code,
            )

        if not current_result.success or not current_scenes:
            return CompositionOutcome(
                success=False,
                data_source=current_result.data_source,
                insight=None,
                metadata=metadata,
                error=current_result.error or NO_CURRENT_SCENES_ERROR,
                status_code=EmptyResultError.status_code,
            )

        if isinstance(baseline_result, BaseException):
            if not isinstance(baseline_result, SatelliteServiceError):
                raise baseline_result
            logger.warning(f"Baseline search failed, comparing against current scenes: {baseline_result}")
            baseline_result = None

        insight = self._build_insight(request, current_result, baseline_result, now)
        logger.info(
            f"Composed health for aoi={request.aoi.id}: score={insight.normalized_health_score}, "
            f"trend={insight.trend}, source={insight.data_source}, confidence={insight.confidence}"
        )

        return CompositionOutcome(
            success=True, data_source=insight.data_source, insight=insight, metadata=metadata, error=None
        )

    async def _run_search(self, request: AnalysisRequest, window: DateRange) -> IngestResult:
        return await self._search(
            aoi=request.aoi,
            start_date=window.start_date,
            end_date=window.end_date,
            max_cloud_cover=request.max_cloud_cover,
            max_results=request.max_results,
            allow_fallback=request.allow_fallback,
        )

    def _build_insight(
        self,
        request: AnalysisRequest,
        current: IngestResult,
        baseline: Optional[IngestResult],
        now: datetime,
    ) -> HealthInsight:
        policy = self.policy
        baseline_scenes = baseline.scenes if baseline else []

        current_scene = current.scenes[0]
        current_estimate = estimate_scene(current_scene)
        baseline_estimates = [estimate_scene(scene) for scene in (baseline_scenes or current.scenes)]

        baseline_ndvi = round(_average([e.ndvi_estimate for e in baseline_estimates]), 3)
        baseline_zone_ndvi = [
            round(_average([e.zone_ndvi[index] for e in baseline_estimates]), 3)
            for index in range(len(ZONE_LABELS))
        ]

        score = ndvi_to_score(current_estimate.ndvi_estimate, policy)
        baseline_score = ndvi_to_score(baseline_ndvi, policy)
        score_delta = score - baseline_score

        rings = zone_band_rings(request.aoi.bbox, len(ZONE_LABELS))
        zones = []
        for index, zone_ndvi in enumerate(current_estimate.zone_ndvi):
            zone_score = ndvi_to_score(zone_ndvi, policy)
            baseline_zone_score = ndvi_to_score(baseline_zone_ndvi[index], policy)
            zones.append(HealthZone(
                zone_id=f"zone-{index + 1}",
                label=ZONE_LABELS[index],
                status=score_to_zone_status(zone_score, policy),
                normalized_score=zone_score,
                ndvi_estimate=round(zone_ndvi, 3),
                trend=delta_to_trend(zone_score - baseline_zone_score, policy),
                coordinates=rings[index],
            ))

        confidence = _average([current_estimate.confidence, _average([e.confidence for e in baseline_estimates])])
        if current.data_source == "fallback_sample":
            confidence -= 0.08
        if baseline is not None and baseline.data_source == "fallback_sample":
            confidence -= 0.05
        if len(current.scenes) + len(baseline_scenes) >= 4:
            confidence += 0.05
        confidence = round(clamp(confidence, 0.28, 0.9), 2)

        fallback_used = current.data_source == "fallback_sample" or (
            baseline is not None and baseline.data_source == "fallback_sample"
        )
        data_source = "fallback_sample" if fallback_used else "live"

        cloud_cover = current_scene.cloud_cover_percent
        signals = build_stress_signals(score, score_delta, [z.normalized_score for z in zones], cloud_cover, confidence)
        score_label = score_to_label(score, policy)
        weakest_zone = min(zones, key=lambda zone: zone.normalized_score)

        farm_boundary = request.farm_boundary_polygon or PolygonGeometry(**bbox_to_polygon(request.aoi.bbox))
        overlay = EstimatedZonesOverlay(
            aoi_source=request.aoi_source,
            farm_boundary=farm_boundary,
            zone_polygons=zones,
            scene_footprint_bbox=current_scene.bbox,
            legend=build_legend(policy),
            disclaimer=ESTIMATED_DISCLAIMER,
        )

        return HealthInsight(
            generated_at=now,
            data_source=data_source,
            confidence=confidence,
            score_label=score_label,
            normalized_health_score=score,
            baseline_score=baseline_score,
            score_delta=score_delta,
            trend=delta_to_trend(score_delta, policy),
            ndvi_estimate=current_estimate.ndvi_estimate,
            baseline_ndvi_estimate=baseline_ndvi,
            summary_card_text=build_summary_text(score, score_delta, weakest_zone, score_label),
            uncertainty_note=build_uncertainty_note(
                cloud_cover, current_estimate.method == "metadata_proxy", data_source
            ),
            current_scene=current_scene,
            baseline_scene=baseline_scenes[0] if baseline_scenes else None,
            baseline_scene_count=len(baseline_scenes),
            zones=zones,
            stress_signals=signals,
            recommendations=build_recommendations(signals),
            alerts=build_alerts(score, score_delta, confidence, cloud_cover),
            map_overlay=overlay,
        )
