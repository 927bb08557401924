"""Tests for the panel embed and refresher."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from conftest import make_track
from core.session import NowPlaying, PlaybackSession
from core.track import Requester
from systems.control_panel import PanelRefresher, build_panel_embed, truncate_for_display


def snapshot_with(queue_size: int, paused: bool = False) -> dict:
    session = PlaybackSession(community_id=1, volume=75)
    track = make_track("A", title="snake_case_song").with_requester(Requester(id="1", display_name="Sam"))
    session.current = NowPlaying(track=track, is_paused=paused)
    session.queue = [make_track(str(i)) for i in range(queue_size)]
    return session.to_snapshot()


class TestBuildPanelEmbed:
    def test_idle(self):
        embed = build_panel_embed(None, idle_text="silence")
        assert embed.title == "idle"
        assert embed.description == "silence"
        assert embed.fields == []

    def test_now_playing(self):
        embed = build_panel_embed(snapshot_with(2))

        assert embed.title == "now playing"
        assert "snake\\_case\\_song" in embed.description
        assert "requested by Sam" in embed.description
        assert "3:00" in embed.description
        assert embed.fields[0].name == "up next"
        assert embed.footer.text == "autoplay on • filter none • volume 75%"

    def test_paused_and_long_queue(self):
        embed = build_panel_embed(snapshot_with(8, paused=True))

        assert embed.title == "paused"
        assert embed.fields[0].value.count("\n") == 5
        assert embed.fields[0].value.endswith("... and 3 more")

    def test_truncate(self):
        assert truncate_for_display("abcdef", 5) == "ab..."
        assert truncate_for_display("abc", 5) == "abc"


class TestPanelRefresher:
    @pytest.fixture
    def message(self) -> MagicMock:
        message = MagicMock()
        message.guild = SimpleNamespace(id=1)
        message.edit = AsyncMock()
        return message

    @pytest.fixture
    def bot(self, message) -> MagicMock:
        bot = MagicMock()
        bot.get_channel.return_value.get_partial_message.return_value = message
        return bot

    @pytest.mark.asyncio
    async def test_refresh_edits_message(self, bot, message):
        refresher = PanelRefresher(bot, 10, 20)
        await refresher.refresh(1, snapshot_with(0))

        message.edit.assert_awaited_once()
        assert message.edit.await_args.kwargs["embed"].title == "now playing"

    @pytest.mark.asyncio
    async def test_other_guild_ignored(self, bot, message):
        await PanelRefresher(bot, 10, 20).refresh(2, None)
        message.edit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_without_ids(self, bot, message):
        refresher = PanelRefresher(bot, None, None)
        assert not refresher.enabled
        await refresher.refresh(1, None)
        bot.get_channel.assert_not_called()

    @pytest.mark.asyncio
    async def test_deleted_message_disables(self, bot, message):
        response = MagicMock(status=404, reason="Not Found")
        message.edit.side_effect = discord.NotFound(response, "Unknown Message")
        refresher = PanelRefresher(bot, 10, 20)

        await refresher.refresh(1, None)

        assert not refresher.enabled
