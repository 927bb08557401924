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
Control Job Worker

Polls control_jobs and executes remote-control requests against the
SessionManager.

Tick:
1. Fetch up to batch_size pending jobs, oldest first
2. Claim each one (pending → running compare-and-swap); lost claims are skipped
3. Validate payload, dispatch, record succeeded/failed + audit entry
   (the first add for a guild opens its session in the requester's voice channel)
4. Purge finished jobs older than the retention window (best-effort)

Loop:
- One tick in flight at a time. A trigger during a tick (notify() or a
  concurrent run_tick call) sets a one-slot rerun flag; the loop runs again
  right after instead of sleeping.
- Otherwise sleeps poll_interval, or less if notify() fires.

This is the error boundary: every exception ends as a failed job. Unexpected
exceptions are logged with traceback and recorded with the generic message.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable

from loguru import logger

from core.errors import MusicControlError, NoVoiceChannel, UnsupportedAction
from core.jobs import AddPayload, ControlAction, ControlJob, parse_action, parse_payload
from core.player import SessionManager
from core.track import TrackRef
from utils.config import format_message
from utils.database import utc_now
from utils.persistence import AuditLog, JobStore


class ControlJobWorker:
    def __init__(
        self,
        jobs: JobStore,
        manager: SessionManager,
        audit: AuditLog,
        msg: Callable[..., str] | None = None,
        *,
        locate: Callable[[int, str | None], int | None] | None = None,
        ui_channel_id: int | None = None,
        poll_interval: float = 4.0,
        batch_size: int = 10,
        retention: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.jobs = jobs
        self.manager = manager
        self.audit = audit
        self.msg = msg or format_message
        # (guild id, requester id) -> voice channel the requester is in
        self.locate = locate
        self.ui_channel_id = ui_channel_id
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.retention = retention
        self.clock = clock

        self._ticking = False
        # One-slot signal: rerun requested / wake early
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def notify(self) -> None:
        """Store changed; run a tick as soon as possible."""
        self._wake.set()

    # =========================================================================
    # TICK
    # =========================================================================

    async def run_tick(self) -> int:
        """Process one batch. Returns how many jobs this worker executed."""
        if self._ticking:
            self._wake.set()
            return 0

        self._ticking = True
        try:
            try:
                jobs = await self.jobs.fetch_pending(self.batch_size)
            except Exception:
                logger.opt(exception=True).error("failed to fetch control jobs")
                return 0

            executed = 0
            for job in jobs:
                try:
                    claimed = await self.jobs.claim(job.job_id)
                except Exception:
                    logger.opt(exception=True).error(f"failed to claim job {job.job_id}")
                    continue
                if not claimed:
                    logger.debug(f"job {job.job_id} claimed elsewhere")
                    continue
                logger.debug(f"claimed job {job.job_id} ({job.action})")
                await self.execute(job)
                executed += 1

            await self._cleanup()
            return executed
        finally:
            self._ticking = False

    async def execute(self, job: ControlJob) -> None:
        """Run a claimed job to a terminal state."""
        try:
            message = await self.dispatch(job)
        except MusicControlError as e:
            text = e.text if e.custom else self.msg(e.key, **e.fields)
            logger.info(f"job {job.job_id} ({job.action}) failed: {text}")
            await self._finish(job, "failed", text)
        except Exception:
            logger.opt(exception=True).error(f"job {job.job_id} ({job.action}) crashed")
            await self._finish(job, "failed", self.msg("error_generic"))
        else:
            logger.info(f"job {job.job_id} ({job.action}) succeeded")
            await self._finish(job, "succeeded", message)

    async def _finish(self, job: ControlJob, status: str, message: str) -> None:
        try:
            if status == "succeeded":
                await self.jobs.complete(job.job_id)
            else:
                await self.jobs.fail(job.job_id, message)
        except Exception:
            logger.opt(exception=True).error(f"failed to record result for job {job.job_id}")

        await self.audit.record(
            job.action,
            status,
            message,
            community_id=job.community_id,
            payload=job.payload,
            requested_by=job.requested_by,
        )

    async def _cleanup(self) -> None:
        try:
            purged = await self.jobs.purge_terminal(self.clock() - self.retention)
        except Exception:
            logger.opt(exception=True).warning("job cleanup failed")
            return
        if purged:
            logger.debug(f"purged {purged} finished jobs")

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def dispatch(self, job: ControlJob) -> str:
        """Validate, execute, and return the success message."""
        action = parse_action(job.action)
        payload = parse_payload(action, job.payload)
        manager = self.manager

        # Only add may start a session; everything else needs a live one
        if action == ControlAction.ADD and manager.get(job.community_id) is None:
            return await self._add_to_new_session(job, payload)
        session = manager.require(job.community_id)

        if action == ControlAction.PLAY:
            was_paused = session.is_paused
            await manager.play(session)
            if was_paused or session.current is None:
                return self.msg("resumed")
            return self.msg("playing", title=session.current.track.title)

        elif action == ControlAction.PAUSE:
            await manager.pause(session)
            return self.msg("paused")

        elif action == ControlAction.STOP:
            await manager.stop(session)
            return self.msg("stopped")

        elif action == ControlAction.SKIP:
            track = await manager.skip(session)
            return self.msg("skipped", title=track.title)

        elif action == ControlAction.PREVIOUS:
            track = await manager.previous(session)
            return self.msg("previous_played", title=track.title)

        elif action == ControlAction.ADD:
            added = await manager.add(session, payload.query, payload.requester)
            return self._added_message(added)

        elif action == ControlAction.REMOVE:
            removed = await manager.remove(session, payload.track_id, payload.index)
            return self.msg("track_removed", title=removed.title)

        elif action == ControlAction.REORDER:
            await manager.reorder(session, list(payload.order))
            return self.msg("queue_reordered")

        elif action == ControlAction.CLEAR:
            count = await manager.clear(session)
            return self.msg("queue_cleared", count=count)

        elif action == ControlAction.VOLUME:
            level = await manager.set_volume(session, payload.level)
            return self.msg("volume_set", level=level)

        elif action == ControlAction.AUTOPLAY:
            await manager.set_autoplay(session, payload.enabled)
            return self.msg("autoplay_on" if payload.enabled else "autoplay_off")

        elif action == ControlAction.FILTER:
            await manager.apply_filter_preset(session, payload.preset)
            return self.msg("filter_set", preset=payload.preset.value)

        raise UnsupportedAction(action=action.value)

    async def _add_to_new_session(self, job: ControlJob, payload: AddPayload) -> str:
        """First add for a guild: join the requester's voice channel, then add.

        A session whose first search fails is torn down again so nothing sits
        in voice with an empty queue.
        """
        channel_id = payload.voice_channel_id
        if channel_id is None and self.locate is not None and payload.requester is not None:
            channel_id = self.locate(job.community_id, payload.requester.id)
        if channel_id is None:
            raise NoVoiceChannel()

        session = await self.manager.ensure_session(job.community_id, channel_id, self.ui_channel_id)
        try:
            added = await self.manager.add(session, payload.query, payload.requester)
        except Exception:
            await self.manager.destroy(job.community_id, reason="first add failed")
            raise
        return self._added_message(added)

    def _added_message(self, added: TrackRef | list[TrackRef]) -> str:
        if isinstance(added, list):
            return self.msg("playlist_added", count=len(added))
        return self.msg("track_added", title=added.title)

    # =========================================================================
    # LOOP
    # =========================================================================

    async def _loop(self) -> None:
        logger.info("control job worker started")
        while True:
            self._wake.clear()
            try:
                await self.run_tick()
            except Exception:
                logger.opt(exception=True).error("control job tick failed")
            if self._wake.is_set():
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("control job worker stopped")
