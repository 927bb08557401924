"""Tests for query normalization, the oEmbed fallback and autoplay picking."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import mafic
import pytest

from conftest import FakeSearch, make_track
from core.autoplay import AUTOPLAY_REQUESTER, AutoplayResolver, build_autoplay_query, pick_candidate
from core.errors import BackendUnavailable
from core.search import (
    LavalinkSearch,
    compact_title,
    fallback_queries,
    is_spotify_query,
    is_youtube_url,
    normalize_query,
)
from core.track import SearchResult


class TestNormalizeQuery:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("  daft punk  ", "daft punk"),
            ("<https://youtu.be/abc>", "https://youtu.be/abc"),
            ("youtu.be/abc", "https://youtu.be/abc"),
            ("spotify:track:123", "https://open.spotify.com/track/123"),
            ("https://soundcloud.com/x/y", "https://soundcloud.com/x/y"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_query(raw) == expected

    def test_spotify_detection(self):
        assert is_spotify_query("https://open.spotify.com/track/1")
        assert not is_spotify_query("spot the difference")

    def test_youtube_detection(self):
        assert is_youtube_url("https://www.youtube.com/watch?v=x")
        assert is_youtube_url("https://youtu.be/x")
        assert not is_youtube_url("https://soundcloud.com/x")


class TestFallbackQueries:
    def test_compact_title(self):
        assert compact_title("Song (Official Video) [Lyrics]") == "Song (Official Video)"
        assert compact_title("Song (Official) [lyrics]") == "Song"

    def test_order_and_dedup(self):
        queries = fallback_queries("Song (Official)", "Band")
        assert queries == ["Song (Official) Band", "Song (Official)", "Song Band", "Song"]
        assert fallback_queries("Song", "") == ["Song"]


def mafic_track(identifier: str, title: str = "song", stream: bool = False) -> SimpleNamespace:
    return SimpleNamespace(
        id=identifier, title=title, author="band", uri=f"https://youtu.be/{identifier}",
        length=0 if stream else 200000, stream=stream, artwork_url=None,
    )


class TestLavalinkSearch:
    @pytest.fixture
    def node(self) -> SimpleNamespace:
        return SimpleNamespace(available=True, fetch_tracks=AsyncMock())

    @pytest.fixture
    def resolver(self, node) -> LavalinkSearch:
        return LavalinkSearch(SimpleNamespace(nodes=[node]))

    @pytest.mark.asyncio
    async def test_track_results(self, resolver, node):
        node.fetch_tracks.return_value = [mafic_track("a"), mafic_track("b", stream=True)]

        result = await resolver.search("song")

        assert [t.id for t in result.tracks] == ["a", "b"]
        assert result.tracks[0].locator == "https://youtu.be/a"
        assert result.tracks[1].is_live

    @pytest.mark.asyncio
    async def test_no_node(self):
        resolver = LavalinkSearch(SimpleNamespace(nodes=[SimpleNamespace(available=False)]))
        with pytest.raises(BackendUnavailable):
            await resolver.search("song")

    @pytest.mark.asyncio
    async def test_load_failure_is_empty(self, resolver, node):
        class Blocked(mafic.TrackLoadException):
            def __init__(self) -> None:
                Exception.__init__(self, "blocked in your region")

        node.fetch_tracks.side_effect = Blocked()
        assert not await resolver.search("song")

    @pytest.mark.asyncio
    async def test_url_falls_back_to_oembed_title(self, resolver, node):
        url = "https://youtu.be/gone"

        async def fetch(query, search_type=None):
            return [mafic_track("found")] if query == "Song Band" else []

        node.fetch_tracks.side_effect = fetch
        with patch.object(resolver, "_fetch_oembed", AsyncMock(return_value=("Song", "Band"))):
            result = await resolver.search(url)

        assert [t.id for t in result.tracks] == ["found"]

    @pytest.mark.asyncio
    async def test_text_query_has_no_fallback(self, resolver, node):
        node.fetch_tracks.return_value = []
        with patch.object(resolver, "_fetch_oembed", AsyncMock()) as oembed:
            assert not await resolver.search("nothing")
        oembed.assert_not_awaited()


class TestAutoplay:
    def test_query(self):
        assert build_autoplay_query(make_track("A", title="song", author="band")) == "song band"
        assert build_autoplay_query(make_track("A", title="song", author=" ")) == "song"

    def test_pick_skips_finished(self):
        finished = make_track("A")
        assert pick_candidate(finished, [make_track("A"), make_track("B")]).id == "B"
        assert pick_candidate(finished, [make_track("A")]).id == "A"
        assert pick_candidate(finished, []) is None

    @pytest.mark.asyncio
    async def test_resolve_tags_requester(self):
        search = FakeSearch()
        search.add("song A artist", make_track("A"), make_track("B"))

        track = await AutoplayResolver(search).resolve(make_track("A"))

        assert track.id == "B"
        assert track.requester == AUTOPLAY_REQUESTER

    @pytest.mark.asyncio
    async def test_resolve_swallows_search_errors(self):
        search = FakeSearch()
        search.error = BackendUnavailable()
        assert await AutoplayResolver(search).resolve(make_track("A")) is None

    @pytest.mark.asyncio
    async def test_resolve_nothing_found(self):
        search = AsyncMock()
        search.search.return_value = SearchResult()
        assert await AutoplayResolver(search).resolve(make_track("A")) is None
