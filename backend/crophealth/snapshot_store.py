"""
Ingest snapshot persistence for the /satellite/ingest history view.
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from .api_models import IngestResult, IngestSnapshot
from .database import IngestSnapshotRecord, async_session_maker
from .logger_config import get_logger
from .utils import utcnow

logger = get_logger("snapshot_store")

DEFAULT_HISTORY_LIMIT = 10
MAX_HISTORY_LIMIT = 100


class SnapshotStore:
    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker or async_session_maker

    async def save(self, result: IngestResult, user_id: Optional[str] = None) -> int:
        """Persist an ingest result and return the snapshot id."""
        snapshot = IngestSnapshot(
            user_id=user_id,
            aoi=result.metadata.aoi,
            provider=result.metadata.provider,
            collection=result.metadata.collection,
            data_source=result.data_source,
            scene_count=len(result.scenes),
            scenes=result.scenes,
            max_cloud_cover=result.metadata.max_cloud_cover,
            requested_range=result.metadata.requested_range,
            created_at=utcnow(),
        )
        record = IngestSnapshotRecord(
            user_id=user_id,
            aoi_id=snapshot.aoi.id,
            data_source=snapshot.data_source,
            scene_count=snapshot.scene_count,
            created_at=snapshot.created_at,
            snapshot_json=snapshot.model_dump_json(by_alias=True),
        )

        async with self._session_maker() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)

        logger.info(f"Saved ingest snapshot id={record.id} aoi={snapshot.aoi.id} scenes={snapshot.scene_count}")
        return record.id

    async def history(
        self,
        user_id: Optional[str] = None,
        aoi_id: Optional[str] = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> List[IngestSnapshot]:
        """Newest snapshots first, optionally filtered by user and AOI."""
        query = select(IngestSnapshotRecord)
        if user_id:
            query = query.where(IngestSnapshotRecord.user_id == user_id)
        if aoi_id:
            query = query.where(IngestSnapshotRecord.aoi_id == aoi_id)
        query = query.order_by(
            IngestSnapshotRecord.created_at.desc(), IngestSnapshotRecord.id.desc()
        ).limit(max(1, min(limit, MAX_HISTORY_LIMIT)))

        async with self._session_maker() as session:
            records = (await session.execute(query)).scalars().all()

        return [
            IngestSnapshot.model_validate_json(record.snapshot_json).model_copy(update={"id": record.id})
            for record in records
        ]
