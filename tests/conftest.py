"""Shared fixtures: fake Lavalink collaborators and a file-backed database."""

import pytest
import pytest_asyncio

from core.player import SessionManager
from core.track import Requester, ResultKind, SearchResult, TrackRef
from systems.persistence import PersistenceMirror
from utils.database import Database
from utils.persistence import AuditLog, HealthSampleStore, JobStore, SnapshotStore


def make_track(track_id: str, title: str | None = None, author: str = "artist",
               locator: str | None = None, duration_ms: int | None = 180000) -> TrackRef:
    return TrackRef(
        id=track_id,
        title=title or f"song {track_id}",
        author=author,
        locator=locator,
        duration_ms=duration_ms,
    )


class FakeSearch:
    """Search resolver answering from a query → result table."""

    def __init__(self) -> None:
        self.results: dict[str, SearchResult] = {}
        self.calls: list[tuple[str, Requester | None]] = []
        self.error: Exception | None = None

    def add(self, query: str, *tracks: TrackRef, playlist: str | None = None) -> None:
        kind = ResultKind.PLAYLIST if playlist else ResultKind.TRACK
        self.results[query] = SearchResult(tracks=list(tracks), kind=kind, playlist_name=playlist)

    async def search(self, query: str, requester: Requester | None = None) -> SearchResult:
        self.calls.append((query, requester))
        if self.error is not None:
            raise self.error
        result = self.results.get(query)
        if result is None:
            return SearchResult()
        return SearchResult(
            tracks=[track.with_requester(requester) for track in result.tracks],
            kind=result.kind,
            playlist_name=result.playlist_name,
        )


class FakeTransport:
    """Records every call a SessionManager makes on the player."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.played: list[TrackRef] = []
        self.position = 0
        self.fail_play = False
        self.destroyed = False

    async def play(self, track: TrackRef) -> None:
        if self.fail_play:
            raise RuntimeError("node went away")
        self.played.append(track)
        self.calls.append(("play", track.id))

    async def pause(self, paused: bool = True) -> None:
        self.calls.append(("pause", paused))

    async def stop(self) -> None:
        self.calls.append(("stop",))

    async def set_volume(self, level: int) -> None:
        self.calls.append(("volume", level))

    async def apply_filter(self, preset) -> None:
        self.calls.append(("filter", preset))

    async def clear_filters(self) -> None:
        self.calls.append(("clear_filters",))

    async def destroy(self) -> None:
        self.destroyed = True
        self.calls.append(("destroy",))


class FakeVoice:
    """connect() hands out FakeTransports; listener counts are set per channel."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.listeners: dict[int, int] = {}
        self.fail_play = False  # applied to every new transport

    async def connect(self, community_id: int, channel_id: int) -> FakeTransport:
        transport = FakeTransport()
        transport.fail_play = self.fail_play
        self.transports.append(transport)
        return transport

    def count_listeners(self, channel_id: int | None) -> int:
        return self.listeners.get(channel_id, 0)


class FakeMirror:
    """Keeps the latest snapshot per guild instead of writing it anywhere."""

    def __init__(self) -> None:
        self.snapshots: dict[int, dict | None] = {}
        self.published = 0

    def publish(self, session) -> None:
        self.published += 1
        self.snapshots[session.community_id] = session.to_snapshot()

    def publish_cleared(self, community_id: int, ui_channel_id: int | None = None) -> None:
        self.snapshots[community_id] = None


@pytest.fixture
def search() -> FakeSearch:
    return FakeSearch()


@pytest.fixture
def voice() -> FakeVoice:
    return FakeVoice()


@pytest.fixture
def mirror() -> FakeMirror:
    return FakeMirror()


@pytest.fixture
def manager(search: FakeSearch, voice: FakeVoice, mirror: FakeMirror) -> SessionManager:
    return SessionManager(
        search,
        voice.connect,
        mirror,
        voice.count_listeners,
        empty_grace=0.01,
        idle_timeout=0.01,
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh SQLite file per test."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'encore.db'}")
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def jobs(db: Database) -> JobStore:
    return JobStore(db)


@pytest.fixture
def snapshots(db: Database) -> SnapshotStore:
    return SnapshotStore(db)


@pytest.fixture
def samples(db: Database) -> HealthSampleStore:
    return HealthSampleStore(db)


@pytest.fixture
def audit(db: Database) -> AuditLog:
    return AuditLog(db)


@pytest_asyncio.fixture
async def db_mirror(snapshots: SnapshotStore):
    mirror = PersistenceMirror(snapshots)
    yield mirror
    # Let detached writes land before the database goes away
    await mirror.flush()
