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

"""Autoplay: pick a follow-up track when the queue runs dry."""

from loguru import logger

from core.track import Requester, TrackRef

AUTOPLAY_REQUESTER = Requester(id="autoplay", username="autoplay", source="autoplay")


def build_autoplay_query(track: TrackRef) -> str | None:
    """Query from the finished track's title and author. None if both are blank."""
    parts = [part.strip() for part in (track.title, track.author) if part and part.strip()]
    if not parts:
        return None
    return " ".join(parts)


def pick_candidate(finished: TrackRef, candidates: list[TrackRef]) -> TrackRef | None:
    """First candidate that isn't the track that just ended, else the first one."""
    if not candidates:
        return None
    for candidate in candidates:
        if candidate.id != finished.id:
            return candidate
    return candidates[0]


class AutoplayResolver:
    """Derives a substitute track from the most recently played one."""

    def __init__(self, search) -> None:
        self.search = search

    async def resolve(self, finished: TrackRef) -> TrackRef | None:
        """Return a follow-up track, or None if autoplay can't find one.

        Search failures are swallowed: autoplay failing just leaves the
        session idle.
        """
        query = build_autoplay_query(finished)
        if not query:
            logger.debug("autoplay skipped, finished track has no title or author")
            return None

        try:
            result = await self.search.search(query, AUTOPLAY_REQUESTER)
        except Exception:
            logger.opt(exception=True).warning(f"autoplay search failed for {query!r}")
            return None

        choice = pick_candidate(finished, result.tracks)
        if choice is None:
            logger.info(f"autoplay found nothing for {query!r}")
            return None
        return choice.with_requester(AUTOPLAY_REQUESTER)
