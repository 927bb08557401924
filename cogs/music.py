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

"""Lavalink and voice events wired into the SessionManager."""

import discord
import mafic
from discord.ext import commands
from loguru import logger

from core.player import SessionManager

# End reasons that mean "move on to the next track"
ADVANCE_REASONS = (mafic.EndReason.FINISHED, mafic.EndReason.LOAD_FAILED)


class Music(commands.Cog):
    """Playback event handling. Commands arrive as control jobs, not here."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    @property
    def sessions(self) -> SessionManager:
        return self.bot.sessions

    @commands.Cog.listener()
    async def on_node_ready(self, node: mafic.Node) -> None:
        logger.info(f"lavalink node {node.label} ready")

    @commands.Cog.listener()
    async def on_track_end(self, event: mafic.TrackEndEvent) -> None:
        # Replaced = skip/previous already started the next track
        # Stopped/cleanup = session is being torn down
        if event.reason not in ADVANCE_REASONS:
            return
        if event.reason == mafic.EndReason.LOAD_FAILED:
            logger.warning(f"track failed to load: {event.track.title!r}")
        await self.sessions.handle_track_end(event.player.guild.id)

    @commands.Cog.listener()
    async def on_track_exception(self, event: mafic.TrackExceptionEvent) -> None:
        # on_track_end follows and advances the queue
        logger.warning(f"track exception for {event.track.title!r}: {event.exception}")

    @commands.Cog.listener()
    async def on_track_stuck(self, event: mafic.TrackStuckEvent) -> None:
        logger.warning(f"track stuck for {event.track.title!r} (threshold: {event.threshold_ms}ms)")

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        # Shutdown disconnects keep the snapshot for restore
        if getattr(self.bot, "closing", False) or self.sessions is None:
            return

        guild_id = member.guild.id
        session = self.sessions.get(guild_id)
        if session is None:
            return

        # Bot's own channel changes
        if member.id == self.bot.user.id:
            if before.channel and not after.channel:
                logger.info("disconnected from voice")
                await self.sessions.destroy(guild_id, reason="disconnected from voice")
            elif after.channel and before.channel != after.channel:
                logger.info(f"moved to #{after.channel.name}")
                self.sessions.move_output_sink(guild_id, after.channel.id)
            return

        if member.bot:
            return

        # Last listener left an idle session
        left_bot_channel = before.channel and before.channel.id == session.output_sink_id and (
            not after.channel or after.channel.id != session.output_sink_id
        )
        if left_bot_channel and session.is_idle and self.sessions.count_listeners(session) == 0:
            await self.sessions.destroy(guild_id, reason="channel empty")


async def setup(bot: commands.Bot) -> None:
    """Load the Music cog."""
    await bot.add_cog(Music(bot))
