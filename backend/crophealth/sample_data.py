"""
Static data served when the live provider is unavailable: the demo AOI,
the versioned sample scene set and curated NDVI priors for those scenes.
"""

from datetime import datetime, timezone
from typing import Dict, List, NamedTuple, Tuple

from .api_models import AreaOfInterest, SceneMetadata


SAMPLE_SET_VERSION = "s2-odisha-2026.02"

DEFAULT_DEMO_AOI = AreaOfInterest(
    id="odisha-demo-aoi",
    name="Odisha Demo AOI",
    bbox=(85.2, 20.1, 85.45, 20.35),
)

FALLBACK_SCENES: List[SceneMetadata] = [
    SceneMetadata(
        scene_id="S2B_MSIL2A_20260205T044859_N0512_R076_T45QUC_20260205T101322.SAFE",
        captured_at=datetime(2026, 2, 5, 5, 2, 58, 594000, tzinfo=timezone.utc),
        cloud_cover_percent=0.0,
        tile_id="45QUC",
        collection="sentinel-2-l2a",
        bbox=(85.2, 20.1, 85.45, 20.35),
    ),
    SceneMetadata(
        scene_id="S2B_MSIL2A_20260126T044959_N0511_R076_T45QUC_20260126T083358.SAFE",
        captured_at=datetime(2026, 1, 26, 5, 2, 59, 387000, tzinfo=timezone.utc),
        cloud_cover_percent=0.01,
        tile_id="45QUC",
        collection="sentinel-2-l2a",
        bbox=(85.2, 20.1, 85.45, 20.35),
    ),
]


class NdviReference(NamedTuple):
    ndvi_mean: float
    zone_deltas: Tuple[float, float, float]


# Deterministic NDVI priors for the sample scenes; spectral bands are not
# fetched for them.
NDVI_REFERENCE_BY_SCENE: Dict[str, NdviReference] = {
    "S2B_MSIL2A_20260205T044859_N0512_R076_T45QUC_20260205T101322_SAFE": NdviReference(0.67, (0.03, 0.0, -0.05)),
    "S2B_MSIL2A_20260126T044959_N0511_R076_T45QUC_20260126T083358_SAFE": NdviReference(0.62, (0.01, -0.02, -0.04)),
}


def normalize_scene_id(scene_id: str) -> str:
    """Reference keys use underscores where provider ids use dots."""
    return scene_id.replace(".", "_")


def sample_scenes(max_results: int) -> List[SceneMetadata]:
    """Return the first `max_results` sample scenes, newest first."""
    return FALLBACK_SCENES[:max(0, max_results)]
