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
Track References

Value types for playable items and the people who asked for them.
A TrackRef is created by the search resolver, copied into a session's queue,
and serialized verbatim into the persisted snapshot. The backend id is an
encoded Lavalink track and is not assumed to survive a restart.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from core.errors import InvalidTrackRef


def _clean(value: Any) -> str | None:
    """Return a stripped string, or None for blank/non-string values."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class Requester:
    """Who asked for a track. All fields optional, at least one must identify."""

    id: str | None = None
    username: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    source: str | None = None

    def __post_init__(self) -> None:
        if not (self.id or self.username or self.display_name):
            raise InvalidTrackRef("requester needs an id, username or display name")

    @classmethod
    def from_dict(cls, data: dict | None) -> "Requester | None":
        """Build from a job payload / snapshot dict. Returns None if nothing identifies."""
        if not isinstance(data, dict):
            return None
        values = {
            "id": _clean(data.get("id")),
            "username": _clean(data.get("username")),
            "display_name": _clean(data.get("displayName", data.get("display_name"))),
            "avatar_url": _clean(data.get("avatarUrl", data.get("avatar_url"))),
            "source": _clean(data.get("source")),
        }
        if not (values["id"] or values["username"] or values["display_name"]):
            return None
        return cls(**values)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
            "source": self.source,
        }

    @property
    def label(self) -> str:
        """Best human-readable name for logs."""
        return self.display_name or self.username or self.id or "unknown"


@dataclass(frozen=True)
class TrackRef:
    """A resolved or persisted reference to a playable item."""

    id: str | None
    title: str
    author: str = ""
    locator: str | None = None
    duration_ms: int | None = None  # None = live/unbounded
    thumbnail: str | None = None
    requester: Requester | None = field(default=None, compare=False)
    # The mafic.Track this ref was built from. Never persisted.
    playable: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not (self.id or self.locator or (self.title and self.title.strip())):
            raise InvalidTrackRef("track needs an id, locator or title")

    @property
    def is_live(self) -> bool:
        return not self.duration_ms or self.duration_ms <= 0

    def with_requester(self, requester: Requester | None) -> "TrackRef":
        return replace(self, requester=requester)

    @classmethod
    def from_mafic(cls, track, requester: Requester | None = None) -> "TrackRef":
        """Convert a mafic.Track into a TrackRef."""
        length = getattr(track, "length", None)
        if getattr(track, "stream", False):
            length = None
        return cls(
            id=track.id,
            title=track.title or "",
            author=track.author or "",
            locator=getattr(track, "uri", None),
            duration_ms=length if length and length > 0 else None,
            thumbnail=getattr(track, "artwork_url", None),
            requester=requester,
            playable=track,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "TrackRef":
        """Inverse of to_dict(). Raises InvalidTrackRef on unusable data."""
        if not isinstance(data, dict):
            raise InvalidTrackRef("track data must be an object")
        duration = data.get("durationMs", data.get("length"))
        try:
            duration = int(duration) if duration is not None else None
        except (TypeError, ValueError):
            duration = None
        return cls(
            id=_clean(data.get("id")),
            title=_clean(data.get("title")) or "",
            author=_clean(data.get("author")) or "",
            locator=_clean(data.get("locator", data.get("uri"))),
            duration_ms=duration if duration and duration > 0 else None,
            thumbnail=_clean(data.get("thumbnail")),
            requester=Requester.from_dict(data.get("requester")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "locator": self.locator,
            "durationMs": self.duration_ms,
            "thumbnail": self.thumbnail,
            "requester": self.requester.to_dict() if self.requester else None,
        }


class ResultKind(str, Enum):
    TRACK = "TRACK"
    PLAYLIST = "PLAYLIST"


@dataclass
class SearchResult:
    """What the search resolver returns: zero or more candidates."""

    tracks: list[TrackRef] = field(default_factory=list)
    kind: ResultKind = ResultKind.TRACK
    playlist_name: str | None = None

    def __bool__(self) -> bool:
        return bool(self.tracks)


def format_duration(ms: int | None) -> str:
    """Format milliseconds as m:ss or h:mm:ss. Missing/zero length is LIVE."""
    if not ms or ms <= 0:
        return "LIVE"
    total = ms // 1000
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"
