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
Session Recovery

Runs once at startup, before the job worker polls. Rebuilds the home guild's
session from its persisted snapshot.

Encoded Lavalink track ids don't survive a restart reliably, so every
persisted track is searched again (locator first, then "title author", then
title) and the best match is re-queued:
    same id > same locator > first result

Nothing happens unless the snapshot had a current track, both channel ids are
known, and someone is actually sitting in the voice channel. A restore that
can't start playback leaves voice again and keeps the stored snapshot.
"""

from typing import Callable

from loguru import logger

from core.errors import InvalidTrackRef
from core.player import SessionManager
from core.session import FilterPreset, PlaybackSession
from core.track import Requester, TrackRef
from utils.persistence import SnapshotStore

RESTORE_SOURCE = "restore"
RESTORE_LIMIT = 25


def restore_query(track: TrackRef) -> str | None:
    if track.locator:
        return track.locator
    if track.title and track.author:
        return f"{track.title} {track.author}"
    return track.title or None


def restore_requester(original: Requester | None) -> Requester:
    """Synthetic requester that keeps the original display fields."""
    if original is None:
        return Requester(id=RESTORE_SOURCE, username=RESTORE_SOURCE, source=RESTORE_SOURCE)
    return Requester(
        id=original.id or RESTORE_SOURCE,
        username=original.username or RESTORE_SOURCE,
        display_name=original.display_name,
        avatar_url=original.avatar_url,
        source=RESTORE_SOURCE,
    )


def pick_match(persisted: TrackRef, candidates: list[TrackRef]) -> TrackRef | None:
    if not candidates:
        return None
    if persisted.id:
        for candidate in candidates:
            if candidate.id == persisted.id:
                return candidate
    if persisted.locator:
        for candidate in candidates:
            if candidate.locator == persisted.locator:
                return candidate
    return candidates[0]


class SessionRecoveryService:
    def __init__(
        self,
        manager: SessionManager,
        snapshots: SnapshotStore,
        listeners: Callable[[int | None], int],
        *,
        limit: int = RESTORE_LIMIT,
    ) -> None:
        self.manager = manager
        self.snapshots = snapshots
        self.listeners = listeners
        self.limit = limit

    async def resolve(self, persisted: TrackRef) -> TrackRef | None:
        """Re-search one persisted track. None if it can't be found again."""
        query = restore_query(persisted)
        if not query:
            return None
        requester = restore_requester(persisted.requester)
        result = await self.manager.search.search(query, requester)
        match = pick_match(persisted, result.tracks)
        return match.with_requester(requester) if match else None

    async def recover(self, community_id: int) -> PlaybackSession | None:
        """Restore the guild's session. Returns it, or None when nothing was restored."""
        try:
            snapshot = await self.snapshots.load(community_id)
        except Exception:
            logger.opt(exception=True).error("failed to read session snapshot")
            return None

        if not snapshot or not snapshot.get("current_track"):
            logger.debug("no session to restore")
            return None

        sink_id = snapshot.get("output_sink_id")
        ui_channel_id = snapshot.get("ui_channel_id")
        if not sink_id or not ui_channel_id:
            logger.debug("snapshot has no channels, skipping restore")
            return None

        if self.listeners(sink_id) == 0:
            logger.info("nobody in voice, skipping restore")
            return None

        raw_tracks = [snapshot["current_track"], *(snapshot.get("queue") or [])][:self.limit]
        resolved: list[TrackRef] = []
        for raw in raw_tracks:
            try:
                persisted = TrackRef.from_dict(raw)
            except InvalidTrackRef:
                continue
            try:
                track = await self.resolve(persisted)
            except Exception:
                logger.opt(exception=True).warning(f"failed to restore {persisted.title!r}")
                continue
            if track:
                resolved.append(track)

        if not resolved:
            logger.warning("none of the saved tracks could be found again")
            return None

        try:
            preset = FilterPreset.parse(snapshot.get("filter_preset"))
        except ValueError:
            preset = FilterPreset.NONE

        try:
            session = await self.manager.restore(
                community_id,
                sink_id,
                ui_channel_id,
                resolved,
                autoplay_enabled=snapshot.get("autoplay_enabled", True),
                filter_preset=preset,
                volume=snapshot.get("volume"),
            )
        except Exception:
            logger.opt(exception=True).error("session restore failed")
            return None

        logger.info(f"restored {len(resolved)}/{len(raw_tracks)} tracks")
        return session
