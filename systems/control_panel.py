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
Control Panel

A single status message (configured by panel.channel_id / panel.message_id)
edited in place after every session change. Rendered from the session
snapshot, so it shows exactly what was persisted.

The message is addressed with a PartialMessage (no fetch, no
READ_MESSAGE_HISTORY). A deleted panel disables further refreshes until
restart.
"""

import discord
from loguru import logger

from core.track import format_duration

UP_NEXT_COUNT = 5
TITLE_MAX = 80  # keeps the "up next" field well under 1024 chars


def escape_markdown(text: str) -> str:
    """Escape underscores so titles don't turn italic."""
    return text.replace("_", "\\_")


def truncate_for_display(text: str, max_length: int) -> str:
    """Truncate with "...". Call before escape_markdown."""
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


def _track_line(track: dict) -> str:
    title = escape_markdown(truncate_for_display(track.get("title") or "unknown", TITLE_MAX))
    author = track.get("author")
    duration = format_duration(track.get("durationMs"))
    if author:
        return f"**{title}** by {escape_markdown(author)} `{duration}`"
    return f"**{title}** `{duration}`"


def build_panel_embed(snapshot: dict | None, color: int = 0xA03E72, idle_text: str = "nothing playing") -> discord.Embed:
    """Plain status embed: now playing, next five, settings footer."""
    embed = discord.Embed(color=color)
    current = snapshot.get("current_track") if snapshot else None

    if not current:
        embed.title = "idle"
        embed.description = idle_text
    else:
        embed.title = "paused" if current.get("isPaused") else "now playing"
        embed.description = _track_line(current)
        requester = current.get("requester") or {}
        if name := requester.get("displayName") or requester.get("username"):
            embed.description += f"\nrequested by {escape_markdown(name)}"
        if current.get("thumbnail"):
            embed.set_thumbnail(url=current["thumbnail"])

    queue = snapshot.get("queue", []) if snapshot else []
    if queue:
        lines = [f"{i}. {_track_line(track)}" for i, track in enumerate(queue[:UP_NEXT_COUNT], start=1)]
        if len(queue) > UP_NEXT_COUNT:
            lines.append(f"... and {len(queue) - UP_NEXT_COUNT} more")
        embed.add_field(name="up next", value="\n".join(lines), inline=False)

    if snapshot:
        autoplay = "on" if snapshot.get("autoplay_enabled", True) else "off"
        embed.set_footer(
            text=f"autoplay {autoplay} • filter {snapshot.get('filter_preset', 'none')} • volume {snapshot.get('volume', 60)}%"
        )
    return embed


class PanelRefresher:
    """Edits the configured panel message."""

    def __init__(self, bot, channel_id: int | None, message_id: int | None,
                 color: int = 0xA03E72, idle_text: str = "nothing playing") -> None:
        self.bot = bot
        self.channel_id = channel_id
        self.message_id = message_id
        self.color = color
        self.idle_text = idle_text
        self._cached_message: discord.PartialMessage | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.channel_id and self.message_id)

    def _get_message(self, community_id: int) -> discord.PartialMessage | None:
        if self._cached_message is None:
            channel = self.bot.get_channel(self.channel_id)
            if channel is None:
                return None
            self._cached_message = channel.get_partial_message(self.message_id)
        # Panel belongs to one guild
        guild = getattr(self._cached_message, "guild", None)
        if guild is not None and guild.id != community_id:
            return None
        return self._cached_message

    async def refresh(self, community_id: int, snapshot: dict | None) -> None:
        if not self.enabled:
            return
        message = self._get_message(community_id)
        if message is None:
            return

        embed = build_panel_embed(snapshot, self.color, self.idle_text)
        try:
            await message.edit(content=None, embed=embed)
        except discord.NotFound:
            logger.warning("panel message deleted, refreshes disabled")
            self.message_id = None
            self._cached_message = None
        except discord.HTTPException as e:
            logger.warning(f"panel update failed: {e}")
