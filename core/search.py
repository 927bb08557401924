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
Track search through Lavalink.

Query handling:
- Wrapping <...> (Discord embed suppression) is stripped
- spotify:track:id URIs become open.spotify.com links (then rejected upstream)
- Bare domains ("youtu.be/abc") get https:// prepended
- Anything else is a free-text search (YouTube by default)

When a YouTube URL resolves to nothing (region lock, age gate, removed upload),
the video's oEmbed title/author is fetched and searched as text instead.
"""

import re
from urllib.parse import urlparse

import aiohttp
import mafic
from loguru import logger

from core.errors import BackendUnavailable
from core.track import Requester, ResultKind, SearchResult, TrackRef

YOUTUBE_OEMBED_ENDPOINT = "https://www.youtube.com/oembed"
OEMBED_TIMEOUT = 4  # seconds

_URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
_BARE_DOMAIN_PATTERN = re.compile(r"^[\w.-]+\.[a-z]{2,}(/|$)", re.IGNORECASE)
_NOISE_PATTERN = re.compile(
    r"[\[(](official|lyrics?|lyric video|mv|audio|music video)[\])]", re.IGNORECASE
)


def normalize_query(raw: str) -> str:
    """Normalize user input into a URL or a search string."""
    trimmed = raw.strip()
    if trimmed.startswith("<") and trimmed.endswith(">"):
        trimmed = trimmed[1:-1].strip()
    if _URL_PATTERN.match(trimmed):
        return trimmed
    if trimmed.lower().startswith("spotify:"):
        parts = trimmed.split(":")
        if len(parts) >= 3:
            return f"https://open.spotify.com/{parts[1]}/{parts[2]}"
    if _BARE_DOMAIN_PATTERN.match(trimmed):
        return f"https://{trimmed}"
    return trimmed


def is_spotify_query(value: str) -> bool:
    lowered = value.lower()
    return "spotify.com" in lowered or lowered.startswith("spotify:")


def is_url(value: str) -> bool:
    return bool(_URL_PATTERN.match(value))


def is_youtube_url(value: str) -> bool:
    try:
        host = (urlparse(value).hostname or "").lower()
    except ValueError:
        return False
    return "youtube.com" in host or "youtu.be" in host


def compact_title(title: str) -> str:
    """Strip (Official Video)-style noise from a title."""
    return re.sub(r"\s+", " ", _NOISE_PATTERN.sub("", title)).strip()


def fallback_queries(title: str, author: str) -> list[str]:
    """Text queries to try when a URL didn't resolve, best first, deduplicated."""
    candidates: list[str] = []

    def push(query: str) -> None:
        query = query.strip()
        if query and query not in candidates:
            candidates.append(query)

    clean = compact_title(title)
    if title and author:
        push(f"{title} {author}")
    push(title)
    if clean and clean != title:
        if author:
            push(f"{clean} {author}")
        push(clean)
    return candidates


class LavalinkSearch:
    """Search resolver backed by the mafic node pool.

    Searches go through a node directly (not a player) so recovery can
    resolve tracks before any voice connection exists.
    """

    def __init__(self, pool: mafic.NodePool, session: aiohttp.ClientSession | None = None,
                 search_type: mafic.SearchType = mafic.SearchType.YOUTUBE) -> None:
        self.pool = pool
        self.search_type = search_type
        self._session = session

    def _node(self) -> mafic.Node:
        nodes = [node for node in self.pool.nodes if node.available]
        if not nodes:
            raise BackendUnavailable()
        return nodes[0]

    async def _fetch(self, query: str, requester: Requester | None) -> SearchResult:
        try:
            result = await self._node().fetch_tracks(query, search_type=self.search_type.value)
        except mafic.TrackLoadException as e:
            logger.warning(f"lavalink failed to load {query!r}: {e}")
            return SearchResult()
        except aiohttp.ClientConnectionError as e:
            logger.error(f"lavalink unreachable during search: {e}")
            raise BackendUnavailable() from e

        if result is None:
            return SearchResult()
        if isinstance(result, mafic.Playlist):
            return SearchResult(
                tracks=[TrackRef.from_mafic(t, requester) for t in result.tracks],
                kind=ResultKind.PLAYLIST,
                playlist_name=result.name,
            )
        return SearchResult(tracks=[TrackRef.from_mafic(t, requester) for t in result])

    async def _fetch_oembed(self, url: str) -> tuple[str, str] | None:
        if not is_youtube_url(url):
            return None
        session = self._session or aiohttp.ClientSession()
        try:
            async with session.get(
                YOUTUBE_OEMBED_ENDPOINT,
                params={"url": url, "format": "json"},
                headers={"User-Agent": "EncoreBot/1.0"},
                timeout=aiohttp.ClientTimeout(total=OEMBED_TIMEOUT),
            ) as response:
                if response.status != 200:
                    return None
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError):
            return None
        finally:
            if session is not self._session:
                await session.close()

        title = payload.get("title") if isinstance(payload, dict) else None
        author = payload.get("author_name") if isinstance(payload, dict) else None
        if not isinstance(title, str) or not title.strip():
            return None
        return title.strip(), author.strip() if isinstance(author, str) else ""

    async def search(self, query: str, requester: Requester | None = None) -> SearchResult:
        """Resolve a query or URL into candidates. Empty result means no match."""
        query = normalize_query(query)
        result = await self._fetch(query, requester)
        if result or not is_url(query):
            return result

        metadata = await self._fetch_oembed(query)
        if not metadata:
            return result

        for fallback in fallback_queries(*metadata):
            if fallback == query:
                continue
            retry = await self._fetch(fallback, requester)
            if retry:
                logger.debug(f"url fallback matched via {fallback!r}")
                return retry
        return result
