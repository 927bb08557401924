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
Voice Management

Bridges the SessionManager to Discord voice and Lavalink:
- VoiceManager.connect: join (or reuse) a voice channel as a mafic.Player
- VoiceManager.member_channel: where a requester is sitting (first add for a guild)
- VoiceManager.count_listeners: non-bot members in a voice channel (gateway cache)
- LavalinkTransport: the per-session playback handle the SessionManager drives
"""

import asyncio

import aiohttp
import discord
import mafic
from loguru import logger

from core.errors import BackendUnavailable, VoiceUnavailable
from core.filters import FILTER_LABEL, build_filter
from core.session import FilterPreset
from core.track import TrackRef

CONNECT_TIMEOUT = 10.0  # seconds


class LavalinkTransport:
    """Playback handle over a connected mafic.Player."""

    def __init__(self, player: mafic.Player) -> None:
        self.player = player

    @property
    def position(self) -> int | None:
        try:
            return self.player.position
        except (AttributeError, TypeError):
            return None

    async def _to_mafic(self, track: TrackRef) -> mafic.Track:
        if isinstance(track.playable, mafic.Track):
            return track.playable
        if not track.id:
            raise BackendUnavailable("that track can't be played")
        # A plain string would be sent as a search identifier, not as encodedTrack
        return await self.player.node.decode_track(track.id)

    async def play(self, track: TrackRef) -> None:
        """Start a track, replacing the current one. Always unpauses."""
        try:
            playable = await self._to_mafic(track)
            await self.player.play(playable, replace=True, pause=False)
        except (aiohttp.ClientError, mafic.MaficException) as e:
            logger.error(f"playback failed for {track.title!r}: {e}")
            raise BackendUnavailable() from e

    async def pause(self, paused: bool = True) -> None:
        await self.player.pause(paused)

    async def stop(self) -> None:
        await self.player.stop()

    async def set_volume(self, level: int) -> None:
        await self.player.set_volume(level)

    async def apply_filter(self, preset: FilterPreset) -> None:
        effect = build_filter(preset)
        if effect is not None:
            await self.player.add_filter(effect, label=FILTER_LABEL, fast_apply=True)

    async def clear_filters(self) -> None:
        await self.player.clear_filters(fast_apply=True)

    async def destroy(self) -> None:
        await self.player.disconnect(force=True)


class VoiceManager:
    """Voice connections and listener counts for the SessionManager."""

    def __init__(self, bot: discord.Client) -> None:
        self.bot = bot

    async def connect(self, community_id: int, channel_id: int) -> LavalinkTransport:
        """Join the voice channel (or reuse the guild's player) and wrap it."""
        guild = self.bot.get_guild(community_id)
        if guild is None:
            raise VoiceUnavailable("i'm not in that server")

        channel = guild.get_channel(channel_id)
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise VoiceUnavailable()

        player = guild.voice_client
        if isinstance(player, mafic.Player) and player.connected:
            if player.channel != channel:
                await player.move_to(channel)
                logger.info(f"moved to #{channel.name}")
            return LavalinkTransport(player)

        permissions = channel.permissions_for(guild.me)
        if not permissions.connect or not permissions.speak:
            raise VoiceUnavailable("don't have access to that channel")

        try:
            player = await channel.connect(cls=mafic.Player, self_deaf=True, timeout=CONNECT_TIMEOUT)
        except (asyncio.TimeoutError, discord.ClientException) as e:
            logger.error(f"voice connection failed: {e}")
            raise VoiceUnavailable() from e

        logger.info(f"joined #{channel.name}")
        return LavalinkTransport(player)

    def member_channel(self, community_id: int, user_id: str | None) -> int | None:
        """Voice channel a guild member is sitting in, from the gateway cache."""
        guild = self.bot.get_guild(community_id)
        if guild is None or not user_id or not str(user_id).isdigit():
            return None
        member = guild.get_member(int(user_id))
        if member is None or member.voice is None or member.voice.channel is None:
            return None
        return member.voice.channel.id

    def count_listeners(self, channel_id: int | None) -> int:
        """Non-bot members currently in a voice channel."""
        if channel_id is None:
            return 0
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            return 0
        return sum(1 for member in getattr(channel, "members", []) if not member.bot)
