"""Tests for SessionManager queue, transport and teardown behavior."""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock

import mafic
import pytest

from conftest import make_track
from core.errors import (
    AlreadyPaused,
    AlreadyPlaying,
    EmptyQueue,
    NoActiveSession,
    NoNextTrack,
    NoPreviousTrack,
    NoSearchResults,
    NothingPlaying,
    TrackNotFound,
    UnsupportedSource,
)
from core.player import SessionManager
from core.session import FilterPreset
from systems.voice_manager import LavalinkTransport

GUILD = 100
VOICE = 200


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll until a background task has done its thing."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_ensure_session_is_idempotent(self, manager, voice):
        first, second = await asyncio.gather(
            manager.ensure_session(GUILD, VOICE),
            manager.ensure_session(GUILD, VOICE),
        )
        third = await manager.ensure_session(GUILD, VOICE)

        assert first is second is third
        assert len(voice.transports) == 1
        assert voice.transports[0].calls == [("volume", 60)]

    @pytest.mark.asyncio
    async def test_require_without_session(self, manager):
        with pytest.raises(NoActiveSession):
            manager.require(GUILD)

    @pytest.mark.asyncio
    async def test_destroy_clears_snapshot(self, manager, mirror):
        session = await manager.ensure_session(GUILD, VOICE)
        assert await manager.destroy(GUILD)

        assert session.transport.destroyed
        assert manager.get(GUILD) is None
        assert mirror.snapshots[GUILD] is None
        assert not await manager.destroy(GUILD)


class TestQueue:
    @pytest.mark.asyncio
    async def test_add_starts_playback(self, manager, search, mirror):
        search.add("song a", make_track("A"))
        session = await manager.ensure_session(GUILD, VOICE)

        added = await manager.add(session, "song a")

        assert added.id == "A"
        assert session.current.track.id == "A"
        assert session.queue == []
        assert mirror.snapshots[GUILD]["current_track"]["id"] == "A"

    @pytest.mark.asyncio
    async def test_add_while_playing_appends(self, manager, search):
        search.add("a", make_track("A"))
        search.add("b", make_track("B"))
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "a")
        await manager.add(session, "b")

        assert session.current.track.id == "A"
        assert [t.id for t in session.queue] == ["B"]

    @pytest.mark.asyncio
    async def test_add_playlist_in_order(self, manager, search):
        search.add("mix", make_track("A"), make_track("B"), make_track("C"), playlist="mix")
        session = await manager.ensure_session(GUILD, VOICE)

        added = await manager.add(session, "mix")

        assert [t.id for t in added] == ["A", "B", "C"]
        assert session.current.track.id == "A"
        assert [t.id for t in session.queue] == ["B", "C"]

    @pytest.mark.asyncio
    async def test_add_does_not_start_when_paused(self, manager, search):
        search.add("a", make_track("A"))
        search.add("b", make_track("B"))
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "a")
        await manager.pause(session)
        await manager.add(session, "b")

        assert session.current.track.id == "A"
        assert session.is_paused

    @pytest.mark.asyncio
    async def test_add_no_results(self, manager):
        session = await manager.ensure_session(GUILD, VOICE)
        with pytest.raises(NoSearchResults):
            await manager.add(session, "nothing matches this")

    @pytest.mark.asyncio
    async def test_add_rejects_spotify(self, manager, search):
        session = await manager.ensure_session(GUILD, VOICE)
        with pytest.raises(UnsupportedSource):
            await manager.add(session, "spotify:track:4uLU6hMCjMI75M1A2tKUQC")
        assert search.calls == []

    @pytest.mark.asyncio
    async def test_add_rolls_back_when_play_fails(self, manager, search, mirror):
        search.add("a", make_track("A"))
        search.add("b", make_track("B"))
        session = await manager.ensure_session(GUILD, VOICE)
        session.transport.fail_play = True

        with pytest.raises(RuntimeError):
            await manager.add(session, "a")

        assert session.queue == []
        assert session.current is None

        # The failed add never comes back later
        session.transport.fail_play = False
        await manager.add(session, "b")
        assert session.current.track.id == "B"
        assert session.queue == []
        assert mirror.snapshots[GUILD]["queue"] == []

    @pytest.mark.asyncio
    async def test_remove_by_index(self, manager):
        session = await manager.ensure_session(GUILD, VOICE)
        session.queue = [make_track(x) for x in "ABC"]

        removed = await manager.remove(session, index=1)

        assert removed.id == "B"
        assert [t.id for t in session.queue] == ["A", "C"]

    @pytest.mark.asyncio
    async def test_remove_unknown(self, manager):
        session = await manager.ensure_session(GUILD, VOICE)
        session.queue = [make_track("A")]
        with pytest.raises(TrackNotFound):
            await manager.remove(session, track_id="Z")

    @pytest.mark.asyncio
    async def test_reorder(self, manager, mirror):
        session = await manager.ensure_session(GUILD, VOICE)
        session.queue = [make_track(x) for x in "ABCD"]

        await manager.reorder(session, ["C", "A"])

        assert [t.id for t in session.queue] == ["C", "A", "B", "D"]
        assert [t["id"] for t in mirror.snapshots[GUILD]["queue"]] == ["C", "A", "B", "D"]

    @pytest.mark.asyncio
    async def test_clear(self, manager, search):
        search.add("mix", make_track("A"), make_track("B"), make_track("C"), playlist="mix")
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "mix")

        assert await manager.clear(session) == 2
        assert session.current.track.id == "A"
        with pytest.raises(EmptyQueue):
            await manager.clear(session)


class TestTransport:
    @pytest.mark.asyncio
    async def test_pause_and_resume(self, manager, search):
        search.add("a", make_track("A"))
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "a")

        with pytest.raises(AlreadyPlaying):
            await manager.play(session)
        await manager.pause(session)
        with pytest.raises(AlreadyPaused):
            await manager.pause(session)
        await manager.play(session)

        assert session.is_playing
        assert ("pause", True) in session.transport.calls
        assert ("pause", False) in session.transport.calls

    @pytest.mark.asyncio
    async def test_pause_nothing_playing(self, manager):
        session = await manager.ensure_session(GUILD, VOICE)
        with pytest.raises(NothingPlaying):
            await manager.pause(session)

    @pytest.mark.asyncio
    async def test_skip(self, manager, search):
        search.add("mix", make_track("A"), make_track("B"), playlist="mix")
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "mix")

        track = await manager.skip(session)

        assert track.id == "B"
        assert session.current.track.id == "B"
        assert [t.id for t in session.history] == ["A"]
        with pytest.raises(NoNextTrack):
            await manager.skip(session)

    @pytest.mark.asyncio
    async def test_skip_keeps_queue_when_play_fails(self, manager, search):
        search.add("mix", make_track("A"), make_track("B"), playlist="mix")
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "mix")
        session.transport.fail_play = True

        with pytest.raises(RuntimeError):
            await manager.skip(session)

        assert session.current.track.id == "A"
        assert [t.id for t in session.queue] == ["B"]

    @pytest.mark.asyncio
    async def test_skip_and_previous_while_paused_resume_the_player(self, search, mirror):
        player = AsyncMock()
        player.position = 0

        async def connect(community_id, channel_id):
            return LavalinkTransport(player)

        manager = SessionManager(search, connect, mirror, lambda channel_id: 1)
        tracks = [replace(make_track(x), playable=mafic.Track.__new__(mafic.Track)) for x in "AB"]
        search.add("mix", *tracks, playlist="mix")
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "mix")

        await manager.pause(session)
        await manager.skip(session)
        assert not session.is_paused
        assert player.play.await_args.kwargs["pause"] is False

        await manager.pause(session)
        await manager.previous(session)
        assert session.current.track.id == "A"
        assert player.play.await_args.kwargs["pause"] is False
        with pytest.raises(AlreadyPlaying):
            await manager.play(session)

    @pytest.mark.asyncio
    async def test_previous_puts_current_back(self, manager, search):
        search.add("mix", make_track("A"), make_track("B"), make_track("C"), playlist="mix")
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "mix")
        await manager.skip(session)

        track = await manager.previous(session)

        assert track.id == "A"
        assert session.current.track.id == "A"
        assert [t.id for t in session.queue] == ["B", "C"]
        with pytest.raises(NoPreviousTrack):
            await manager.previous(session)

    @pytest.mark.asyncio
    async def test_stop_destroys(self, manager, search, mirror):
        search.add("a", make_track("A"))
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "a")

        await manager.stop(session)

        assert manager.get(GUILD) is None
        assert mirror.snapshots[GUILD] is None

    @pytest.mark.asyncio
    async def test_stop_idle_session(self, manager):
        session = await manager.ensure_session(GUILD, VOICE)
        with pytest.raises(NothingPlaying):
            await manager.stop(session)


class TestSettings:
    @pytest.mark.asyncio
    async def test_filter_preset_clears_first(self, manager, mirror):
        session = await manager.ensure_session(GUILD, VOICE)

        await manager.apply_filter_preset(session, FilterPreset.NIGHTCORE)
        await manager.apply_filter_preset(session, FilterPreset.NONE)

        calls = session.transport.calls[1:]
        assert calls == [
            ("clear_filters",),
            ("filter", FilterPreset.NIGHTCORE),
            ("clear_filters",),
        ]
        assert mirror.snapshots[GUILD]["filter_preset"] == "none"

    @pytest.mark.asyncio
    async def test_volume_and_autoplay(self, manager, mirror):
        session = await manager.ensure_session(GUILD, VOICE)

        assert await manager.set_volume(session, 400) == 150
        await manager.set_autoplay(session, False)

        assert mirror.snapshots[GUILD]["volume"] == 150
        assert mirror.snapshots[GUILD]["autoplay_enabled"] is False

    @pytest.mark.asyncio
    async def test_move_output_sink(self, manager, mirror):
        await manager.ensure_session(GUILD, VOICE)
        manager.move_output_sink(GUILD, 999)
        assert mirror.snapshots[GUILD]["output_sink_id"] == 999


class TestTrackEnd:
    @pytest.mark.asyncio
    async def test_advances_queue(self, manager, search):
        search.add("mix", make_track("A"), make_track("B"), playlist="mix")
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "mix")

        await manager.handle_track_end(GUILD)

        assert session.current.track.id == "B"
        assert [t.id for t in session.history] == ["A"]

    @pytest.mark.asyncio
    async def test_failed_advance_tears_down_unattended_session(self, manager, search):
        search.add("mix", make_track("A"), make_track("B"), playlist="mix")
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "mix")
        session.transport.fail_play = True

        await manager.handle_track_end(GUILD)

        assert session.current is None
        assert [t.id for t in session.queue] == ["B"]
        await wait_until(lambda: manager.get(GUILD) is None)

    @pytest.mark.asyncio
    async def test_failed_advance_can_be_resumed(self, manager, search, voice):
        search.add("mix", make_track("A"), make_track("B"), playlist="mix")
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "mix")
        voice.listeners[VOICE] = 1
        session.transport.fail_play = True

        await manager.handle_track_end(GUILD)
        await asyncio.sleep(0.05)
        assert manager.get(GUILD) is session

        session.transport.fail_play = False
        await manager.play(session)
        assert session.current.track.id == "B"
        assert session.queue == []

    @pytest.mark.asyncio
    async def test_empty_channel_tears_down(self, manager, search, voice):
        search.add("a", make_track("A"))
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "a")
        voice.listeners[VOICE] = 0

        await manager.handle_track_end(GUILD)
        await wait_until(lambda: manager.get(GUILD) is None)

        # Autoplay never searched
        assert [query for query, _ in search.calls] == ["a"]

    @pytest.mark.asyncio
    async def test_autoplay_skips_finished_track(self, manager, search, voice):
        finished = make_track("A", title="around the world", author="daft punk")
        search.add("a", finished)
        search.add("around the world daft punk", finished, make_track("X"))
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "a")
        voice.listeners[VOICE] = 2

        await manager.handle_track_end(GUILD)
        await wait_until(lambda: session.current is not None)

        assert session.current.track.id == "X"
        assert session.current.track.requester.source == "autoplay"

    @pytest.mark.asyncio
    async def test_autoplay_nothing_found_then_idle_teardown(self, search, voice, mirror):
        manager = SessionManager(search, voice.connect, mirror, voice.count_listeners,
                                 empty_grace=0.01, idle_timeout=0.2)
        search.add("a", make_track("A"))
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "a")
        voice.listeners[VOICE] = 1

        await manager.handle_track_end(GUILD)
        await wait_until(lambda: len(search.calls) == 2)
        assert session.is_idle
        # Everyone leaves while idle
        voice.listeners[VOICE] = 0
        await wait_until(lambda: manager.get(GUILD) is None)

    @pytest.mark.asyncio
    async def test_autoplay_disabled_stays_idle_with_listeners(self, manager, search, voice):
        search.add("a", make_track("A"))
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.set_autoplay(session, False)
        await manager.add(session, "a")
        voice.listeners[VOICE] = 3

        await manager.handle_track_end(GUILD)
        await asyncio.sleep(0.1)

        assert manager.get(GUILD) is session
        assert session.is_idle

    @pytest.mark.asyncio
    async def test_enqueue_during_grace_cancels_teardown(self, search, voice, mirror):
        manager = SessionManager(search, voice.connect, mirror, voice.count_listeners,
                                 empty_grace=0.05, idle_timeout=0.01)
        search.add("a", make_track("A"))
        search.add("b", make_track("B"))
        session = await manager.ensure_session(GUILD, VOICE)
        await manager.add(session, "a")

        await manager.handle_track_end(GUILD)
        await manager.add(session, "b")
        await asyncio.sleep(0.1)

        assert manager.get(GUILD) is session
        assert session.current.track.id == "B"
