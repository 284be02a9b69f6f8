"""
Database models and connection management.
Uses SQLAlchemy with async support for SQLite (development) or PostgreSQL (production).
"""

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, Text, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from .config import settings
from .logger_config import get_logger

logger = get_logger("database")

Base = declarative_base()


# ============== Database Models ==============

class HealthCacheRecord(Base):
    """
    Primary cache table. One row per successful analysis; the newest row for a
    key supersedes older ones.
    """
    __tablename__ = "satellite_health_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cache_key = Column(String(255), nullable=False, index=True)
    user_id = Column(String(128), nullable=True, index=True)

    precision_mode = Column(String(32), nullable=False)
    data_source = Column(String(32), nullable=False)
    source_scene_id = Column(String(255), nullable=True)

    cached_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    # Full CacheEntry serialized as JSON so reads yield an immutable snapshot
    entry_json = Column(Text, nullable=False)


class ProfileCacheHistory(Base):
    """
    Append-only per-user cache history, written when the primary table
    rejects writes.
    """
    __tablename__ = "profile_cache_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False, index=True)
    cache_key = Column(String(255), nullable=False)
    cached_at = Column(DateTime(timezone=True), nullable=False)
    entry_json = Column(Text, nullable=False)


class FarmProfileRecord(Base):
    """
    Saved farm boundary for a user. Written by the farm-profile forms, read
    here for AOI resolution.
    """
    __tablename__ = "farm_profiles"

    user_id = Column(String(128), primary_key=True)
    farmer_name = Column(String(255), nullable=True)

    bbox_min_lon = Column(Float, nullable=True)
    bbox_min_lat = Column(Float, nullable=True)
    bbox_max_lon = Column(Float, nullable=True)
    bbox_max_lat = Column(Float, nullable=True)

    # Polygon rings: [[[lon, lat], ...]]
    boundary_coordinates = Column(JSON, nullable=True)

    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow)


class IngestSnapshotRecord(Base):
    """
    Stored catalog search results for audit and history views.
    """
    __tablename__ = "satellite_ingest_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=True, index=True)
    aoi_id = Column(String(128), nullable=False, index=True)
    data_source = Column(String(32), nullable=False)
    scene_count = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    snapshot_json = Column(Text, nullable=False)


# ============== Database Engine & Session ==============

def build_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine. SQLite connections are not pooled: an aiosqlite
    connection must not outlive the event loop that opened it.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False, future=True, poolclass=NullPool)
    return create_async_engine(database_url, echo=False, future=True, pool_pre_ping=True)


def build_session_maker(db_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url)

async_session_maker = build_session_maker(engine)


async def create_tables(db_engine: Optional[AsyncEngine] = None) -> None:
    """
    Create all database tables.
    Called on application startup.
    """
    logger.info("Creating database tables...")
    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created successfully")


async def check_database_health(session_maker: Optional[async_sessionmaker] = None) -> Tuple[bool, Optional[str]]:
    """
    Check if database is accessible.
    Returns (is_healthy, error_message).
    """
    try:
        async with (session_maker or async_session_maker)() as session:
            await session.execute(text("SELECT 1"))
        return True, None
    except Exception as e:
        return False, str(e)
