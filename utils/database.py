# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Database engine, session scope and table models."""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, AsyncIterator

import sqlalchemy as sa
from loguru import logger
from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, String, Text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///data/encore.db"


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes. Everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Base(DeclarativeBase):
    pass


class ControlJobModel(Base):
    """Remote-control request written by the web panel."""

    __tablename__ = "control_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    community_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # pending, running, succeeded, failed
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_control_jobs_pending", "status", "created_at"),
    )


class SessionSnapshotModel(Base):
    """Last known playback state per guild."""

    __tablename__ = "session_snapshots"

    community_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    current_track: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    queue: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    output_sink_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    ui_channel_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    autoplay_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    filter_preset: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    volume: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utc_now)


class HealthSampleModel(Base):
    """Append-only service status history."""

    __tablename__ = "health_samples"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service: Mapped[str] = mapped_column(String(32), nullable=False)
    # operational, degraded, down, unknown
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_health_samples_service_created", "service", "created_at"),
    )


class AuditLogModel(Base):
    """Job outcomes and monitoring events."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    community_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utc_now)


class Database:
    """Owns the async engine and session factory."""

    def __init__(self, url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> None:
        self.url = url
        engine_kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            # Wait for the write lock instead of failing fast
            engine_kwargs["connect_args"] = {"timeout": 30}
            self._ensure_sqlite_dir(url)
        else:
            engine_kwargs["pool_pre_ping"] = True

        self._engine = create_async_engine(url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @staticmethod
    def _ensure_sqlite_dir(url: str) -> None:
        database = make_url(url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)

    @property
    def engine(self):
        return self._engine

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """Transactional scope: commit on success, rollback and re-raise on error."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug("database tables ready")

    async def close(self) -> None:
        await self._engine.dispose()
