"""
Farm profile persistence: the saved land geometry used to resolve a user's AOI.
"""

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from .api_models import BBoxTuple
from .database import FarmProfileRecord, async_session_maker
from .logger_config import get_logger
from .utils import utcnow

logger = get_logger("profile_store")


@dataclass(frozen=True)
class FarmProfile:
    user_id: str
    farmer_name: Optional[str]
    bbox: Optional[BBoxTuple]
    coordinates: Optional[List[List[List[float]]]]


def _record_to_profile(record: FarmProfileRecord) -> FarmProfile:
    corners = (record.bbox_min_lon, record.bbox_min_lat, record.bbox_max_lon, record.bbox_max_lat)
    bbox = None if any(value is None for value in corners) else tuple(float(value) for value in corners)
    return FarmProfile(
        user_id=record.user_id,
        farmer_name=record.farmer_name,
        bbox=bbox,
        coordinates=record.boundary_coordinates or None,
    )


class ProfileStore:
    """Reads and writes farm profiles. Errors propagate to the caller."""

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker or async_session_maker

    async def get_farm_profile(self, user_id: str) -> Optional[FarmProfile]:
        async with self._session_maker() as session:
            record = await session.get(FarmProfileRecord, user_id)
            return _record_to_profile(record) if record else None

    async def save_land_geometry(
        self,
        user_id: str,
        bbox: BBoxTuple,
        coordinates: Optional[List[List[List[float]]]] = None,
        farmer_name: Optional[str] = None,
    ) -> FarmProfile:
        """Create or replace the user's land geometry."""
        async with self._session_maker() as session:
            result = await session.execute(select(FarmProfileRecord).where(FarmProfileRecord.user_id == user_id))
            record = result.scalar_one_or_none()
            if record is None:
                record = FarmProfileRecord(user_id=user_id)
                session.add(record)

            record.bbox_min_lon, record.bbox_min_lat, record.bbox_max_lon, record.bbox_max_lat = bbox
            record.boundary_coordinates = coordinates
            if farmer_name is not None:
                record.farmer_name = farmer_name
            record.updated_at = utcnow()

            await session.commit()
            logger.info(f"Saved land geometry for user={user_id}, bbox={bbox}")
            return _record_to_profile(record)
