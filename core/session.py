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
Playback Session State

One PlaybackSession per guild. Queue model: history ← current → queue.
The current track is never a member of the queue; queue order is play order.
Only the SessionManager mutates sessions.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from core.track import TrackRef

DEFAULT_VOLUME = 60
MIN_VOLUME = 1
MAX_VOLUME = 150


class FilterPreset(str, Enum):
    NONE = "none"
    BASS_BOOST = "bass-boost"
    NIGHTCORE = "nightcore"
    VAPORWAVE = "vaporwave"
    KARAOKE = "karaoke"

    @classmethod
    def parse(cls, value: Any) -> "FilterPreset":
        """Accept enum values or loose spellings ("bassboost", "Bass_Boost")."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("_", "-")
        if text == "bassboost":
            text = "bass-boost"
        return cls(text)


@dataclass
class NowPlaying:
    """The current track plus transport flags."""

    track: TrackRef
    position_ms: int = 0
    is_playing: bool = True
    is_paused: bool = False


@dataclass
class PlaybackSession:
    """Mutable per-guild playback state."""

    community_id: int
    output_sink_id: int | None = None
    ui_channel_id: int | None = None
    current: NowPlaying | None = None
    queue: list[TrackRef] = field(default_factory=list)
    history: deque = field(default_factory=lambda: deque(maxlen=50))
    autoplay_enabled: bool = True
    filter_preset: FilterPreset = FilterPreset.NONE
    volume: int = DEFAULT_VOLUME

    # Transport handle (not persisted). Set by SessionManager.ensure_session.
    transport: Any = field(default=None, repr=False, compare=False)

    @property
    def is_playing(self) -> bool:
        return self.current is not None and self.current.is_playing and not self.current.is_paused

    @property
    def is_paused(self) -> bool:
        return self.current is not None and self.current.is_paused

    @property
    def is_idle(self) -> bool:
        return self.current is None and not self.queue

    def to_snapshot(self) -> dict:
        """Serialize observable state for the persisted snapshot."""
        current = None
        if self.current:
            position = self.current.position_ms
            if self.transport is not None:
                position = getattr(self.transport, "position", position) or position
            current = {
                **self.current.track.to_dict(),
                "positionMs": int(position),
                "isPlaying": self.current.is_playing,
                "isPaused": self.current.is_paused,
            }
        return {
            "community_id": self.community_id,
            "current_track": current,
            "queue": [track.to_dict() for track in self.queue],
            "output_sink_id": self.output_sink_id,
            "ui_channel_id": self.ui_channel_id,
            "autoplay_enabled": self.autoplay_enabled,
            "filter_preset": self.filter_preset.value,
            "volume": self.volume,
        }


def clamp_volume(level: int) -> int:
    return max(MIN_VOLUME, min(MAX_VOLUME, int(level)))


def reorder_tracks(queue: list[TrackRef], order: list[str]) -> list[TrackRef]:
    """Stable partial permutation of a queue.

    Listed ids come first in the given order (ids not in the queue are ignored,
    each queued track is placed once). Unlisted tracks follow in their prior
    relative order.
    """
    remaining = list(queue)
    ordered: list[TrackRef] = []
    for track_id in order:
        for i, track in enumerate(remaining):
            if track.id == track_id:
                ordered.append(remaining.pop(i))
                break
    return ordered + remaining


def find_track_index(queue: list[TrackRef], track_id: str | None, index: int | None) -> int | None:
    """Resolve a remove target to a queue index.

    The track id is looked up first; the index is used when no id was given
    or the id is no longer queued.
    """
    if track_id:
        for i, track in enumerate(queue):
            if track.id == track_id:
                return i
    if index is not None and 0 <= index < len(queue):
        return index
    return None
