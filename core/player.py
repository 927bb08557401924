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
Session Manager - Per-Guild Playback State

Owns every live PlaybackSession (one per guild) and is the only thing that
mutates them. Passed explicitly to the job worker, recovery service, health
monitor and Lavalink event handlers.

Delegates to:
- search resolver: query → candidate tracks
- transport: the guild's Lavalink player (play/pause/stop/filters/volume)
- mirror: snapshot write + panel refresh after every mutation (fire-and-forget)
- autoplay: follow-up track when the queue runs dry

No per-session locking: the bot is single-threaded and jobs run one after
another in claim order. Every operation checks its precondition before
touching transport state.
"""

import asyncio
from collections import deque
from typing import Awaitable, Callable

from loguru import logger

from core.autoplay import AutoplayResolver
from core.errors import (
    AlreadyPaused,
    AlreadyPlaying,
    EmptyQueue,
    NoActiveSession,
    NoNextTrack,
    NoPreviousTrack,
    NoSearchResults,
    NothingPlaying,
    NothingToPlay,
    TrackNotFound,
    UnsupportedSource,
)
from core.search import is_spotify_query, normalize_query
from core.session import (
    DEFAULT_VOLUME,
    FilterPreset,
    NowPlaying,
    PlaybackSession,
    clamp_volume,
    find_track_index,
    reorder_tracks,
)
from core.track import Requester, ResultKind, TrackRef

# Wait before reacting to an empty queue (transient during track transitions)
EMPTY_QUEUE_GRACE = 1.2
# Idle session with nobody listening is torn down after this
IDLE_TIMEOUT = 15.0


class SessionManager:
    """Context object: guild id → PlaybackSession."""

    def __init__(
        self,
        search,
        connect: Callable[[int, int], Awaitable],
        mirror,
        listeners: Callable[[int | None], int],
        *,
        autoplay: AutoplayResolver | None = None,
        default_volume: int = DEFAULT_VOLUME,
        default_autoplay: bool = True,
        history_size: int = 50,
        empty_grace: float = EMPTY_QUEUE_GRACE,
        idle_timeout: float = IDLE_TIMEOUT,
    ) -> None:
        """
        Args:
            search: Search resolver (search(query, requester) → SearchResult)
            connect: Coroutine (guild_id, voice_channel_id) → transport
            mirror: Persistence mirror (publish / publish_cleared)
            listeners: Voice channel id → number of non-bot members
            autoplay: Autoplay resolver (defaults to one using `search`)
        """
        self.search = search
        self.mirror = mirror
        self.autoplay = autoplay or AutoplayResolver(search)
        self.default_volume = clamp_volume(default_volume)
        self.default_autoplay = default_autoplay
        self.history_size = history_size
        self.empty_grace = empty_grace
        self.idle_timeout = idle_timeout

        self._connect = connect
        self._listeners = listeners
        self.sessions: dict[int, PlaybackSession] = {}

        # Queue-end handling (grace → autoplay → idle teardown), one per guild
        self._idle_tasks: dict[int, asyncio.Task] = {}
        # Serializes session creation so concurrent callers share one connect
        self._create_locks: dict[int, asyncio.Lock] = {}

    # =========================================================================
    # LOOKUP / LIFECYCLE
    # =========================================================================

    def get(self, community_id: int) -> PlaybackSession | None:
        return self.sessions.get(community_id)

    def require(self, community_id: int) -> PlaybackSession:
        """Live session for a guild, or NoActiveSession."""
        session = self.sessions.get(community_id)
        if session is None:
            raise NoActiveSession()
        return session

    def count_listeners(self, session: PlaybackSession) -> int:
        if session.output_sink_id is None:
            return 0
        try:
            return self._listeners(session.output_sink_id)
        except Exception:
            logger.opt(exception=True).warning("listener count failed, assuming empty")
            return 0

    async def ensure_session(
        self,
        community_id: int,
        output_sink_id: int,
        ui_channel_id: int | None = None,
        *,
        publish: bool = True,
    ) -> PlaybackSession:
        """Return the guild's session, creating and connecting it if needed.

        With publish=False a new session is not mirrored yet.
        """
        if community_id in self.sessions:
            return self.sessions[community_id]

        lock = self._create_locks.setdefault(community_id, asyncio.Lock())
        async with lock:
            # Re-check after acquiring (another caller may have created it)
            if community_id in self.sessions:
                return self.sessions[community_id]

            transport = await self._connect(community_id, output_sink_id)
            session = PlaybackSession(
                community_id=community_id,
                output_sink_id=output_sink_id,
                ui_channel_id=ui_channel_id,
                history=deque(maxlen=self.history_size),
                autoplay_enabled=self.default_autoplay,
                volume=self.default_volume,
                transport=transport,
            )
            await transport.set_volume(session.volume)
            self.sessions[community_id] = session
            logger.info(f"session created for guild {community_id} in channel {output_sink_id}")

        if publish:
            self._publish(session)
        return session

    async def restore(
        self,
        community_id: int,
        output_sink_id: int,
        ui_channel_id: int | None,
        tracks: list[TrackRef],
        *,
        autoplay_enabled: bool = True,
        filter_preset: FilterPreset = FilterPreset.NONE,
        volume: int | None = None,
    ) -> PlaybackSession:
        """Open a session from saved state and start the first track.

        Nothing is mirrored until playback has started. On failure the session
        is dropped again and the stored snapshot is left as it was.
        """
        session = await self.ensure_session(community_id, output_sink_id, ui_channel_id, publish=False)
        try:
            session.autoplay_enabled = bool(autoplay_enabled)
            if filter_preset != FilterPreset.NONE:
                await session.transport.apply_filter(filter_preset)
                session.filter_preset = filter_preset
            session.volume = clamp_volume(volume or self.default_volume)
            await session.transport.set_volume(session.volume)
            session.queue.extend(tracks)
            await self._start_next(session)
        except Exception:
            await self.destroy(community_id, reason="restore failed", keep_snapshot=True)
            raise

        self._publish(session)
        return session

    async def destroy(self, community_id: int, reason: str = "stopped", *, keep_snapshot: bool = False) -> bool:
        """Tear down a session: leave voice, forget state, clear the snapshot.

        keep_snapshot leaves the stored snapshot untouched (failed restores).
        """
        session = self.sessions.pop(community_id, None)
        self._cancel_idle(community_id)
        if session is None:
            return False

        if session.transport is not None:
            try:
                await session.transport.destroy()
            except Exception:
                logger.opt(exception=True).warning("transport destroy failed")

        if not keep_snapshot:
            self.mirror.publish_cleared(community_id, session.ui_channel_id)
        logger.info(f"session for guild {community_id} destroyed ({reason})")
        return True

    # =========================================================================
    # QUEUE MUTATION
    # =========================================================================

    async def add(
        self, session: PlaybackSession, query: str, requester: Requester | None = None
    ) -> TrackRef | list[TrackRef]:
        """Search and append. Returns the track, or the list for a playlist."""
        query = normalize_query(query)
        if is_spotify_query(query):
            raise UnsupportedSource()

        result = await self.search.search(query, requester)
        if not result.tracks:
            raise NoSearchResults()

        if result.kind == ResultKind.PLAYLIST:
            added: TrackRef | list[TrackRef] = list(result.tracks)
            await self.enqueue(session, list(result.tracks))
            logger.info(f"queued playlist {result.playlist_name!r} ({len(result.tracks)} tracks)")
        else:
            added = result.tracks[0]
            await self.enqueue(session, [added])
            logger.info(f"queued {added.title!r}")
        return added

    async def enqueue(self, session: PlaybackSession, tracks: list[TrackRef]) -> None:
        """Append tracks in order; start playback if nothing is playing or paused.

        If playback can't start, the appended tracks are taken back out.
        """
        session.queue.extend(tracks)
        if session.current is None:
            try:
                await self._start_next(session)
            except Exception:
                del session.queue[len(session.queue) - len(tracks):]
                raise
            self._cancel_idle(session.community_id)
        self._publish(session)

    async def remove(
        self, session: PlaybackSession, track_id: str | None = None, index: int | None = None
    ) -> TrackRef:
        position = find_track_index(session.queue, track_id, index)
        if position is None:
            raise TrackNotFound()
        removed = session.queue.pop(position)
        self._publish(session)
        logger.info(f"removed {removed.title!r} from queue")
        return removed

    async def reorder(self, session: PlaybackSession, order: list[str]) -> None:
        session.queue = reorder_tracks(session.queue, list(order))
        self._publish(session)

    async def clear(self, session: PlaybackSession) -> int:
        """Empty the queue. Current track keeps playing."""
        if not session.queue:
            raise EmptyQueue()
        count = len(session.queue)
        session.queue.clear()
        self._publish(session)
        logger.info(f"cleared {count} queued tracks")
        return count

    # =========================================================================
    # TRANSPORT CONTROLS
    # =========================================================================

    async def play(self, session: PlaybackSession) -> None:
        """Resume if paused, otherwise start the next queued track."""
        if session.is_playing:
            raise AlreadyPlaying()
        if session.is_paused:
            await session.transport.pause(False)
            session.current.is_paused = False
            session.current.is_playing = True
        elif session.current is not None:
            # Stopped on the current track (e.g. after a load failure)
            await session.transport.play(session.current.track)
            session.current.is_playing = True
        elif session.queue:
            await self._start_next(session)
            self._cancel_idle(session.community_id)
        else:
            raise NothingToPlay()
        self._publish(session)

    async def pause(self, session: PlaybackSession) -> None:
        if session.current is None:
            raise NothingPlaying()
        if session.is_paused:
            raise AlreadyPaused()
        await session.transport.pause(True)
        session.current.is_paused = True
        self._publish(session)

    async def stop(self, session: PlaybackSession) -> None:
        if session.current is None and not session.queue:
            raise NothingPlaying()
        await self.destroy(session.community_id, reason="stopped")

    async def skip(self, session: PlaybackSession) -> TrackRef:
        if session.current is None:
            raise NothingPlaying()
        if not session.queue:
            raise NoNextTrack()
        track = await self._start_next(session)
        self._publish(session)
        return track

    async def previous(self, session: PlaybackSession) -> TrackRef:
        """Play the last finished track; the current one goes back to the queue head."""
        if not session.history:
            raise NoPreviousTrack()

        track = session.history.pop()
        try:
            await session.transport.play(track)
        except Exception:
            session.history.append(track)
            raise

        if session.current is not None:
            session.queue.insert(0, session.current.track)
        session.current = NowPlaying(track=track)
        self._cancel_idle(session.community_id)
        self._publish(session)
        return track

    # =========================================================================
    # SESSION SETTINGS
    # =========================================================================

    async def apply_filter_preset(self, session: PlaybackSession, preset: FilterPreset) -> None:
        """Clear the active filter, then apply the preset's effect."""
        preset = FilterPreset.parse(preset)
        await session.transport.clear_filters()
        if preset != FilterPreset.NONE:
            await session.transport.apply_filter(preset)
        session.filter_preset = preset
        self._publish(session)
        logger.info(f"filter preset set to {preset.value}")

    async def set_volume(self, session: PlaybackSession, level: int) -> int:
        level = clamp_volume(level)
        await session.transport.set_volume(level)
        session.volume = level
        self._publish(session)
        return level

    async def set_autoplay(self, session: PlaybackSession, enabled: bool) -> None:
        session.autoplay_enabled = bool(enabled)
        self._publish(session)

    def move_output_sink(self, community_id: int, output_sink_id: int) -> None:
        """Bot was moved to another voice channel."""
        session = self.sessions.get(community_id)
        if session is None or session.output_sink_id == output_sink_id:
            return
        session.output_sink_id = output_sink_id
        self._publish(session)

    # =========================================================================
    # TRACK END / AUTOPLAY
    # =========================================================================

    async def handle_track_end(self, community_id: int) -> None:
        """Advance after the current track finished (or failed to load)."""
        session = self.sessions.get(community_id)
        if session is None or session.current is None:
            return

        finished = session.current.track
        session.history.append(finished)
        session.current = None

        if session.queue:
            try:
                await self._start_next(session, remember_current=False)
            except Exception:
                # Queue stays for a later play; leave if nobody comes back
                logger.opt(exception=True).error(f"failed to start next track in guild {community_id}")
                self._cancel_idle(community_id)
                self._idle_tasks[community_id] = asyncio.create_task(self._idle_teardown(session))
            self._publish(session)
            return

        logger.info("queue finished")
        self._publish(session)
        self._cancel_idle(community_id)
        self._idle_tasks[community_id] = asyncio.create_task(self._handle_queue_end(session, finished))

    async def _handle_queue_end(self, session: PlaybackSession, finished: TrackRef) -> None:
        """Grace period, then leave / autoplay / go idle."""
        community_id = session.community_id
        try:
            await asyncio.sleep(self.empty_grace)
            if self.sessions.get(community_id) is not session or not session.is_idle:
                return

            if self.count_listeners(session) == 0:
                await self.destroy(community_id, reason="queue ended, channel empty")
                return

            if session.autoplay_enabled:
                track = await self.autoplay.resolve(finished)
                # Re-check after await (a job may have queued something meanwhile)
                if track and self.sessions.get(community_id) is session and session.is_idle:
                    session.queue.append(track)
                    try:
                        await self._start_next(session)
                        logger.info(f"autoplay picked {track.title!r}")
                        return
                    except Exception:
                        session.queue.clear()
                        logger.opt(exception=True).warning("autoplay playback failed")
                    finally:
                        self._publish(session)

            await self._idle_teardown(session)
        except asyncio.CancelledError:
            pass  # Playback resumed
        finally:
            if self._idle_tasks.get(community_id) is asyncio.current_task():
                self._idle_tasks.pop(community_id, None)

    async def _idle_teardown(self, session: PlaybackSession) -> None:
        """Destroy a session that is still not playing after idle_timeout with nobody listening."""
        community_id = session.community_id
        try:
            await asyncio.sleep(self.idle_timeout)
            if (
                self.sessions.get(community_id) is session
                and session.current is None
                and self.count_listeners(session) == 0
            ):
                await self.destroy(community_id, reason="idle, channel empty")
        finally:
            if self._idle_tasks.get(community_id) is asyncio.current_task():
                self._idle_tasks.pop(community_id, None)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _start_next(self, session: PlaybackSession, remember_current: bool = True) -> TrackRef:
        """Pop the queue head and play it. Queue is left untouched on failure."""
        track = session.queue[0]
        await session.transport.play(track)
        session.queue.pop(0)
        if remember_current and session.current is not None:
            session.history.append(session.current.track)
        session.current = NowPlaying(track=track)
        return track

    def _cancel_idle(self, community_id: int) -> None:
        task = self._idle_tasks.get(community_id)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            self._idle_tasks.pop(community_id, None)

    def _publish(self, session: PlaybackSession) -> None:
        # Only mirror sessions that are still live
        if self.sessions.get(session.community_id) is session:
            self.mirror.publish(session)
