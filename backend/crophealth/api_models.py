"""
Pydantic models for API request/response validation.
Defines the contract for every structure that crosses a component boundary
or is written to the cache. JSON keys are camelCase; Python attributes stay
snake_case.
"""

from datetime import date, datetime
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


BBoxTuple = Tuple[float, float, float, float]  # (min_lon, min_lat, max_lon, max_lat) - EPSG:4326

DataSource = Literal["live", "fallback_sample"]
PrecisionMode = Literal["estimated", "high_accuracy"]
AoiSource = Literal["query_bbox", "profile_land_geometry", "demo_fallback"]
ZoneStatus = Literal["healthy", "watch", "critical"]
Trend = Literal["up", "down", "stable"]
ScoreLabel = Literal["excellent", "good", "watch", "critical"]


class CamelModel(BaseModel):
    """Immutable base model serialized with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ============== Geometry ==============

class AreaOfInterest(CamelModel):
    """The bounding box being analyzed. Immutable once resolved."""
    id: str
    name: str
    bbox: BBoxTuple

    @model_validator(mode="after")
    def validate_bbox_order(self):
        min_lon, min_lat, max_lon, max_lat = self.bbox
        if not (min_lon < max_lon and min_lat < max_lat):
            raise ValueError("bbox must satisfy min_lon < max_lon and min_lat < max_lat")
        return self


class PolygonGeometry(CamelModel):
    """GeoJSON-style polygon."""
    type: Literal["Polygon"] = "Polygon"
    coordinates: List[List[List[float]]]


# ============== Scenes ==============

class SceneMetadata(CamelModel):
    """One satellite acquisition as returned by the catalog."""
    scene_id: str
    captured_at: datetime
    cloud_cover_percent: float = Field(..., ge=0, le=100)
    tile_id: str
    collection: str = "sentinel-2-l2a"
    bbox: Optional[BBoxTuple] = None
    quicklook_url: Optional[str] = None


class DateRange(CamelModel):
    start_date: date
    end_date: date


class IngestMetadata(CamelModel):
    provider: str
    collection: str
    ingested_at: datetime
    aoi: AreaOfInterest
    max_cloud_cover: float
    requested_range: DateRange
    sample_set_version: Optional[str] = Field(None, description="Set when sample scenes were served")


class IngestResult(CamelModel):
    """Outcome of one catalog search, live or from the sample set."""
    success: bool
    data_source: DataSource
    scenes: List[SceneMetadata] = Field(default_factory=list)
    metadata: IngestMetadata
    error: Optional[str] = None


class IngestSnapshot(CamelModel):
    """A persisted ingest result."""
    id: Optional[int] = None
    user_id: Optional[str] = None
    aoi: AreaOfInterest
    provider: str
    collection: str
    data_source: DataSource
    scene_count: int
    scenes: List[SceneMetadata] = Field(default_factory=list)
    max_cloud_cover: float
    requested_range: DateRange
    created_at: datetime


# ============== Health insight ==============

class HealthZone(CamelModel):
    """Health summary for one band of the AOI."""
    zone_id: str
    label: str
    status: ZoneStatus
    normalized_score: int = Field(..., ge=0, le=100)
    ndvi_estimate: float
    trend: Trend
    coordinates: List[List[List[float]]] = Field(default_factory=list, description="Polygon ring(s)")


class LegendItem(CamelModel):
    key: ZoneStatus
    label: str
    score_min: int
    score_max: int
    color: str


class _OverlayBase(CamelModel):
    aoi_source: AoiSource
    farm_boundary: PolygonGeometry
    zone_polygons: List[HealthZone] = Field(default_factory=list)
    scene_footprint_bbox: Optional[BBoxTuple] = None
    legend: List[LegendItem] = Field(default_factory=list)
    disclaimer: str

    def _shared_fields(self) -> dict:
        return {name: getattr(self, name) for name in _OverlayBase.model_fields}

    def as_estimated(self, disclaimer: Optional[str] = None) -> "EstimatedZonesOverlay":
        fields = self._shared_fields()
        if disclaimer:
            fields["disclaimer"] = disclaimer
        return EstimatedZonesOverlay(**fields)

    def with_raster(self, image_data_url: str, image_bbox: BBoxTuple, disclaimer: str) -> "NdviRasterOverlay":
        fields = self._shared_fields()
        fields["disclaimer"] = disclaimer
        return NdviRasterOverlay(image_data_url=image_data_url, image_bbox=image_bbox, **fields)


class EstimatedZonesOverlay(_OverlayBase):
    """Zone bands estimated from metadata. Raster fields are always null."""
    strategy: Literal["estimated_zones"] = "estimated_zones"
    image_data_url: None = None
    image_bbox: None = None


class NdviRasterOverlay(_OverlayBase):
    """Per-pixel NDVI raster for the current scene."""
    strategy: Literal["ndvi_raster"] = "ndvi_raster"
    image_data_url: str = Field(..., min_length=1)
    image_bbox: BBoxTuple


MapOverlay = Annotated[Union[EstimatedZonesOverlay, NdviRasterOverlay], Field(discriminator="strategy")]


class StressSignal(CamelModel):
    type: Literal["water_stress", "nutrient_stress", "pest_or_disease_risk", "cloud_uncertainty", "growth_recovery"]
    confidence: float = Field(..., ge=0, le=1)
    message: str


class Recommendation(CamelModel):
    id: str
    title: str
    rationale: str
    priority: Literal["high", "medium", "low"]
    confidence: float = Field(..., ge=0, le=1)


class HealthAlert(CamelModel):
    severity: Literal["info", "warning", "critical"]
    code: str
    title: str
    message: str


class HealthInsight(CamelModel):
    """
    Crop health comparison of the current window against the baseline window.
    Built fresh for every analysis run and cached by value.
    """
    generated_at: datetime
    data_source: DataSource
    confidence: float = Field(..., ge=0, le=1)
    score_label: ScoreLabel
    normalized_health_score: int = Field(..., ge=0, le=100)
    baseline_score: int = Field(..., ge=0, le=100)
    score_delta: int
    trend: Trend
    ndvi_estimate: float
    baseline_ndvi_estimate: float
    summary_card_text: str
    uncertainty_note: Optional[str] = None
    current_scene: Optional[SceneMetadata] = None
    baseline_scene: Optional[SceneMetadata] = None
    baseline_scene_count: int = 0
    zones: List[HealthZone] = Field(default_factory=list)
    stress_signals: List[StressSignal] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)
    alerts: List[HealthAlert] = Field(default_factory=list)
    map_overlay: Optional[MapOverlay] = None
    high_accuracy_unavailable_reason: Optional[str] = None


# ============== Response metadata ==============

class AnalysisMetadata(CamelModel):
    """What the composer looked at."""
    aoi: AreaOfInterest
    aoi_source: AoiSource
    geometry_used: bool
    current_requested_range: DateRange
    baseline_requested_range: DateRange
    current_scene_count: int = 0
    baseline_scene_count: int = 0


class CacheStatus(CamelModel):
    hit: bool
    key: str
    expires_at: Optional[datetime] = None
    forced: bool = False
    stale_fallback_used: bool = False


class SourceScene(CamelModel):
    scene_id: Optional[str] = None
    captured_at: Optional[datetime] = None


class ResponseMetadata(AnalysisMetadata):
    precision_mode: PrecisionMode
    source_scene: SourceScene
    cache: CacheStatus


class CacheEntry(CamelModel):
    """Most recent health computation for a cache key."""
    cache_key: str
    user_id: Optional[str] = None
    aoi: AreaOfInterest
    precision_mode: PrecisionMode
    data_source: DataSource
    source_scene_id: Optional[str] = None
    source_captured_at: Optional[datetime] = None
    cached_at: datetime
    expires_at: datetime
    health_payload: HealthInsight
    metadata: ResponseMetadata


# ============== Raster ==============

class RasterResult(CamelModel):
    """Outcome of one Process API call. `success=False` means no raster at all."""
    success: bool
    image_data_url: Optional[str] = None
    image_bbox: BBoxTuple
    error: Optional[str] = None


# ============== Envelopes ==============

class HealthData(CamelModel):
    health: HealthInsight
    metadata: ResponseMetadata
    data_source: DataSource


class HealthFailureData(CamelModel):
    metadata: ResponseMetadata
    data_source: DataSource


class HealthEnvelope(CamelModel):
    """Response of /satellite/health."""
    success: bool
    data: Optional[Union[HealthData, HealthFailureData]] = None
    error: Optional[str] = None


class IngestData(CamelModel):
    ingest: IngestResult
    persisted_snapshot_id: Optional[int] = None


class IngestHistoryData(CamelModel):
    history: List[IngestSnapshot] = Field(default_factory=list)


class IngestEnvelope(CamelModel):
    """Response of /satellite/ingest."""
    success: bool
    data: Optional[Union[IngestData, IngestHistoryData]] = None
    error: Optional[str] = None


# ============== Health Check Models ==============

class ServiceStatus(CamelModel):
    """Health status for a single dependency."""
    name: str
    status: str = Field(..., description="healthy, degraded, unhealthy, unknown")
    latency_ms: Optional[float] = None
    message: Optional[str] = None
    last_checked: datetime


class ServiceHealthResponse(CamelModel):
    """Response for /health endpoint."""
    status: str = Field(..., description="healthy, degraded, unhealthy")
    services: List[ServiceStatus] = Field(default_factory=list)
    timestamp: datetime
