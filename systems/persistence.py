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
Session Persistence Mirror

Every session mutation ends with publish(session). The snapshot is taken
synchronously (so it reflects the state at mutation time), then written and
shown on the control panel by detached tasks.

- Fire-and-forget: the mutation never waits for, or fails because of, the write
- Per-guild writes are serialized so snapshots land in mutation order
- Failures are logged once, no retry
- flush() awaits everything still in flight (shutdown, tests)
"""

import asyncio
from typing import Awaitable

from loguru import logger

from core.session import PlaybackSession
from utils.persistence import SnapshotStore


class PersistenceMirror:
    def __init__(self, snapshots: SnapshotStore, panel=None) -> None:
        self.snapshots = snapshots
        self.panel = panel
        self._tasks: set[asyncio.Task] = set()
        self._write_locks: dict[int, asyncio.Lock] = {}

    def publish(self, session: PlaybackSession) -> None:
        """Mirror a live session: snapshot write + panel refresh."""
        snapshot = session.to_snapshot()
        community_id = session.community_id
        self._spawn(self._write(community_id, self.snapshots.save(snapshot)), "snapshot save")
        if self.panel is not None:
            self._spawn(self.panel.refresh(community_id, snapshot), "panel refresh")

    def publish_cleared(self, community_id: int, ui_channel_id: int | None = None) -> None:
        """Mirror a destroyed session: neutral snapshot + idle panel."""
        self._spawn(self._write(community_id, self.snapshots.clear(community_id)), "snapshot clear")
        if self.panel is not None:
            self._spawn(self.panel.refresh(community_id, None), "panel refresh")

    async def _write(self, community_id: int, operation: Awaitable) -> None:
        lock = self._write_locks.setdefault(community_id, asyncio.Lock())
        async with lock:
            await operation

    def _spawn(self, coro: Awaitable, label: str) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, label))

    def _on_done(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if exc := task.exception():
            logger.opt(exception=exc).warning(f"{label} failed")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def flush(self) -> None:
        """Wait for every in-flight write and refresh."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
