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

"""
Persistence - Repositories over the shared database

JobStore:          control_jobs (fetch pending, exclusive claim, terminal states, purge)
SnapshotStore:     session_snapshots (one row per guild, upsert)
HealthSampleStore: health_samples (append-only)
AuditLog:          audit_log (best-effort, never raises)

CLAIM SEMANTICS:

    UPDATE control_jobs SET status='running' WHERE job_id=:id AND status='pending'

    Exactly one caller sees rowcount == 1. Everyone else sees 0 and skips the job.
    This compare-and-swap is the only mutual exclusion between workers.

All timestamps are written as aware UTC and normalized back to UTC on read.
"""

import uuid
from datetime import datetime
from typing import Any, Callable

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from core.jobs import TERMINAL_STATUSES, ControlJob, JobStatus
from utils.database import (
    AuditLogModel,
    ControlJobModel,
    Database,
    HealthSampleModel,
    SessionSnapshotModel,
    as_utc,
    utc_now,
)


def _to_job(model: ControlJobModel) -> ControlJob:
    return ControlJob(
        job_id=model.job_id,
        community_id=model.community_id,
        action=model.action,
        payload=model.payload,
        requested_by=model.requested_by,
        status=JobStatus(model.status),
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
        error_message=model.error_message,
    )


# =============================================================================
# CONTROL JOBS
# =============================================================================

class JobStore:
    """control_jobs table access."""

    def __init__(self, db: Database) -> None:
        self.db = db
        # In-process change notifications (e.g. worker.notify)
        self._listeners: list[Callable[[], None]] = []

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    async def enqueue(
        self,
        community_id: int,
        action: str,
        payload: Any = None,
        requested_by: str | None = None,
        job_id: str | None = None,
        created_at: datetime | None = None,
    ) -> str:
        """Insert a pending job. Producers outside the process write rows directly."""
        job_id = job_id or str(uuid.uuid4())
        now = created_at or utc_now()
        async with self.db.session_scope() as session:
            session.add(ControlJobModel(
                job_id=job_id,
                community_id=community_id,
                action=action,
                payload=payload,
                requested_by=requested_by,
                status=JobStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            ))

        for callback in self._listeners:
            try:
                callback()
            except Exception:
                logger.opt(exception=True).warning("job listener failed")
        return job_id

    async def get(self, job_id: str) -> ControlJob | None:
        async with self.db.session_scope() as session:
            model = await session.get(ControlJobModel, job_id)
            return _to_job(model) if model else None

    async def fetch_pending(self, limit: int = 10) -> list[ControlJob]:
        """Oldest pending jobs first."""
        async with self.db.session_scope() as session:
            result = await session.execute(
                select(ControlJobModel)
                .where(ControlJobModel.status == JobStatus.PENDING.value)
                .order_by(ControlJobModel.created_at.asc())
                .limit(limit)
            )
            return [_to_job(model) for model in result.scalars().all()]

    async def claim(self, job_id: str) -> bool:
        """pending → running. False if someone else got there first."""
        async with self.db.session_scope() as session:
            result = await session.execute(
                update(ControlJobModel)
                .where(
                    ControlJobModel.job_id == job_id,
                    ControlJobModel.status == JobStatus.PENDING.value,
                )
                .values(status=JobStatus.RUNNING.value, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def _finish(self, job_id: str, status: JobStatus, error_message: str | None) -> None:
        async with self.db.session_scope() as session:
            await session.execute(
                update(ControlJobModel)
                .where(
                    ControlJobModel.job_id == job_id,
                    ControlJobModel.status == JobStatus.RUNNING.value,
                )
                .values(status=status.value, error_message=error_message, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )

    async def complete(self, job_id: str) -> None:
        await self._finish(job_id, JobStatus.SUCCEEDED, None)

    async def fail(self, job_id: str, error_message: str) -> None:
        await self._finish(job_id, JobStatus.FAILED, error_message)

    async def purge_terminal(self, older_than: datetime) -> int:
        """Delete succeeded/failed jobs last updated before the cutoff."""
        async with self.db.session_scope() as session:
            result = await session.execute(
                delete(ControlJobModel)
                .where(
                    ControlJobModel.status.in_([s.value for s in TERMINAL_STATUSES]),
                    ControlJobModel.updated_at < older_than,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0


# =============================================================================
# SESSION SNAPSHOTS
# =============================================================================

class SnapshotStore:
    """session_snapshots table access. One row per guild."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def save(self, snapshot: dict) -> None:
        """Upsert a snapshot produced by PlaybackSession.to_snapshot()."""
        community_id = snapshot["community_id"]
        async with self.db.session_scope() as session:
            model = await session.get(SessionSnapshotModel, community_id)
            if model is None:
                model = SessionSnapshotModel(community_id=community_id)
                session.add(model)
            model.current_track = snapshot.get("current_track")
            model.queue = list(snapshot.get("queue") or [])
            model.output_sink_id = snapshot.get("output_sink_id")
            model.ui_channel_id = snapshot.get("ui_channel_id")
            model.autoplay_enabled = bool(snapshot.get("autoplay_enabled", True))
            model.filter_preset = snapshot.get("filter_preset") or "none"
            model.volume = int(snapshot.get("volume", 60))
            model.updated_at = utc_now()

    async def clear(self, community_id: int) -> None:
        """Neutral snapshot: nothing playing, empty queue. Preferences are kept."""
        async with self.db.session_scope() as session:
            model = await session.get(SessionSnapshotModel, community_id)
            if model is None:
                session.add(SessionSnapshotModel(
                    community_id=community_id, current_track=None, queue=[], updated_at=utc_now(),
                ))
                return
            model.current_track = None
            model.queue = []
            model.output_sink_id = None
            model.updated_at = utc_now()

    async def load(self, community_id: int) -> dict | None:
        async with self.db.session_scope() as session:
            model = await session.get(SessionSnapshotModel, community_id)
            if model is None:
                return None
            return {
                "community_id": model.community_id,
                "current_track": model.current_track,
                "queue": list(model.queue or []),
                "output_sink_id": model.output_sink_id,
                "ui_channel_id": model.ui_channel_id,
                "autoplay_enabled": model.autoplay_enabled,
                "filter_preset": model.filter_preset,
                "volume": model.volume,
                "updated_at": as_utc(model.updated_at),
            }


# =============================================================================
# HEALTH SAMPLES
# =============================================================================

class HealthSampleStore:
    """health_samples table access."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def latest(self, service: str) -> tuple[str, datetime] | None:
        """(status, created_at) of the newest sample for a service."""
        async with self.db.session_scope() as session:
            result = await session.execute(
                select(HealthSampleModel)
                .where(HealthSampleModel.service == service)
                .order_by(HealthSampleModel.created_at.desc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return model.status, as_utc(model.created_at)

    async def append(self, service: str, status: str, at: datetime | None = None) -> None:
        async with self.db.session_scope() as session:
            session.add(HealthSampleModel(service=service, status=status, created_at=at or utc_now()))

    async def count(self, service: str) -> int:
        async with self.db.session_scope() as session:
            result = await session.execute(
                select(func.count()).select_from(HealthSampleModel).where(HealthSampleModel.service == service)
            )
            return result.scalar_one()


# =============================================================================
# AUDIT LOG
# =============================================================================

class AuditLog:
    """Write-only audit trail. Failures are logged and swallowed."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def record(
        self,
        action: str,
        status: str,
        message: str | None = None,
        *,
        community_id: int | None = None,
        payload: Any = None,
        requested_by: str | None = None,
    ) -> bool:
        try:
            async with self.db.session_scope() as session:
                session.add(AuditLogModel(
                    community_id=community_id,
                    action=action,
                    status=status,
                    message=message,
                    payload=payload,
                    requested_by=requested_by,
                    created_at=utc_now(),
                ))
            return True
        except (SQLAlchemyError, OSError, TypeError, ValueError):
            logger.opt(exception=True).warning(f"audit log write failed for {action}")
            return False

    async def entries(self, action: str | None = None) -> list[AuditLogModel]:
        """Read back entries, oldest first (diagnostics and tests)."""
        async with self.db.session_scope() as session:
            stmt = select(AuditLogModel).order_by(AuditLogModel.id.asc())
            if action is not None:
                stmt = stmt.where(AuditLogModel.action == action)
            result = await session.execute(stmt)
            return list(result.scalars().all())
