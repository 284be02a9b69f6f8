"""
Health cache adapter.

Entries are appended, never updated: the newest row for a key wins. When
the primary cache table rejects a write outright (permissions, missing
table, read-only database), the adapter stops writing to it for the rest of
the process and appends entries to the per-user history table instead.
Other write errors are logged as a failed write and leave the primary table
in use. Reads always consult the primary table first. Cache failures are
logged here and never reach the HTTP caller.
"""

from datetime import datetime
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .api_models import CacheEntry
from .database import HealthCacheRecord, ProfileCacheHistory, async_session_maker
from .errors import DegradedWriteError
from .logger_config import get_logger
from .utils import BBOX_PRECISION, ensure_utc, format_number

logger = get_logger("cache_store")

CACHE_KEY_PREFIX = "sat-health"

# Rows scanned per key when looking for the newest parseable entry
MAX_ROWS_PER_KEY = 30

# Driver messages that mean the table will keep refusing writes
REJECTION_MARKERS = (
    "permission denied",
    "insufficient privilege",
    "not authorized",
    "readonly database",
    "read-only",
    "no such table",
    "does not exist",
)


def is_rejected_write(error: Exception) -> bool:
    """True when a write error is an outright rejection rather than a transient failure."""
    message = str(error).lower()
    return any(marker in message for marker in REJECTION_MARKERS)


def _format_coordinate(value: float) -> str:
    # + 0.0 folds -0.0 into 0.0 so tiny negative jitter does not change the key
    return f"{round(float(value), BBOX_PRECISION) + 0.0:.{BBOX_PRECISION}f}"


def build_cache_key(
    user_id: Optional[str],
    bbox: tuple,
    precision_mode: str,
    max_cloud_cover: float,
    max_results: int,
) -> str:
    """
    sat-health|<user>|<minLon:minLat:maxLon:maxLat>|<mode>|cc<cloud>|mr<results>

    Coordinates use the same precision as AOI resolution, so float jitter
    below that precision maps to the same key.
    """
    bbox_part = ":".join(_format_coordinate(value) for value in bbox)
    return "|".join([
        CACHE_KEY_PREFIX,
        user_id or "anonymous",
        bbox_part,
        precision_mode,
        f"cc{format_number(max_cloud_cover)}",
        f"mr{int(max_results)}",
    ])


def is_fresh(entry: CacheEntry, now: datetime) -> bool:
    return ensure_utc(now) < ensure_utc(entry.expires_at)


def _parse_entry(entry_json: str) -> Optional[CacheEntry]:
    try:
        return CacheEntry.model_validate_json(entry_json)
    except PydanticValidationError as e:
        logger.warning(f"Skipping unreadable cache row: {e.error_count()} validation errors")
        return None


class CacheStore:
    """Read/write access to cached health entries."""

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker or async_session_maker
        self._primary_enabled = True

    @property
    def primary_enabled(self) -> bool:
        return self._primary_enabled

    async def get(self, user_id: Optional[str], cache_key: str) -> Optional[CacheEntry]:
        """
        Newest entry for the key, scoped to the user when one is given.
        Returns None on a miss or on any read failure.
        """
        try:
            entry = await self._read_primary(user_id, cache_key)
            if entry:
                return entry
        except SQLAlchemyError as e:
            logger.warning(f"Primary health cache read failed for key={cache_key}: {e}")

        try:
            return await self._read_history(user_id, cache_key)
        except SQLAlchemyError as e:
            logger.error(f"Error reading health cache history for key={cache_key}: {e}")
            return None

    async def put(self, entry: CacheEntry) -> bool:
        """
        Append an entry. Returns False when it could not be stored anywhere.
        A transient primary failure returns False and keeps the primary table
        enabled; only a rejection switches writes to the per-user history.
        """
        try:
            stored = await self._write_primary(entry)
        except DegradedWriteError as e:
            logger.warning(f"{e} Switching to per-user cache history.")
            self._primary_enabled = False
            return await self._write_history(entry)

        if stored:
            logger.info(f"Cached health for key={entry.cache_key} until {entry.expires_at.isoformat()}")
        return stored

    async def _read_primary(self, user_id: Optional[str], cache_key: str) -> Optional[CacheEntry]:
        query = select(HealthCacheRecord.entry_json).where(HealthCacheRecord.cache_key == cache_key)
        if user_id:
            query = query.where(HealthCacheRecord.user_id == user_id)
        query = query.order_by(HealthCacheRecord.cached_at.desc(), HealthCacheRecord.id.desc()).limit(MAX_ROWS_PER_KEY)

        async with self._session_maker() as session:
            rows = (await session.execute(query)).scalars().all()

        for entry_json in rows:
            entry = _parse_entry(entry_json)
            if entry:
                return entry
        return None

    async def _read_history(self, user_id: Optional[str], cache_key: str) -> Optional[CacheEntry]:
        if not user_id:
            return None

        query = (
            select(ProfileCacheHistory.entry_json)
            .where(ProfileCacheHistory.user_id == user_id, ProfileCacheHistory.cache_key == cache_key)
            .order_by(ProfileCacheHistory.cached_at.desc(), ProfileCacheHistory.id.desc())
            .limit(MAX_ROWS_PER_KEY)
        )

        async with self._session_maker() as session:
            rows = (await session.execute(query)).scalars().all()

        for entry_json in rows:
            entry = _parse_entry(entry_json)
            if entry:
                return entry
        return None

    async def _write_primary(self, entry: CacheEntry) -> bool:
        if not self._primary_enabled:
            raise DegradedWriteError("Primary health cache is disabled for this process.", source="cache_store")

        record = HealthCacheRecord(
            cache_key=entry.cache_key,
            user_id=entry.user_id,
            precision_mode=entry.precision_mode,
            data_source=entry.data_source,
            source_scene_id=entry.source_scene_id,
            cached_at=ensure_utc(entry.cached_at),
            expires_at=ensure_utc(entry.expires_at),
            entry_json=entry.model_dump_json(by_alias=True),
        )
        try:
            async with self._session_maker() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            if is_rejected_write(e):
                raise DegradedWriteError(f"Primary health cache rejected write: {e}", source="cache_store") from e
            logger.error(f"Health cache write failed for key={entry.cache_key}: {e}")
            return False
        return True

    async def _write_history(self, entry: CacheEntry) -> bool:
        if not entry.user_id:
            logger.error(f"Health cache write dropped for key={entry.cache_key}: no user for fallback history")
            return False

        record = ProfileCacheHistory(
            user_id=entry.user_id,
            cache_key=entry.cache_key,
            cached_at=ensure_utc(entry.cached_at),
            entry_json=entry.model_dump_json(by_alias=True),
        )
        try:
            async with self._session_maker() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Health cache history write failed for key={entry.cache_key}: {e}")
            return False

        logger.info(f"Cached health in user history for key={entry.cache_key}")
        return True
