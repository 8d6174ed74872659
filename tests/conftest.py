import pytest
import os
from datetime import datetime, timezone

os.environ["TEST_MODE"] = "true"
os.environ.setdefault("SPOTIFY_CLIENT_ID", "test-client-id")
os.environ.setdefault("SPOTIFY_CLIENT_SECRET", "test-client-secret")

from db import DatabaseManager, get_session
from models import SpotifyToken, SpotifyData, TimeRange

from tests.mocks.spotify import FakeSpotify, FakeOAuth, ARTISTS, TRACKS

NOW = datetime(2025, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
async def test_db(tmp_path, monkeypatch):
    """Fresh SQLite database per test, picked up by DatabaseManager through DATABASE_URL."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("SPOTIFY_OWNER", "owner")

    await DatabaseManager.cleanup_all_instances()
    db_manager = DatabaseManager()
    await db_manager.create_tables()

    yield db_manager

    await DatabaseManager.cleanup_all_instances()

@pytest.fixture
def fake_spotify(monkeypatch):
    fake = FakeSpotify(ARTISTS, TRACKS)
    monkeypatch.setattr("portfolio.spotify.get_spotipy", fake.authed)
    return fake

@pytest.fixture
def fake_oauth(monkeypatch):
    fake = FakeOAuth()
    monkeypatch.setattr("portfolio.spotify.get_sp_oauth", lambda state=None: fake)
    return fake

@pytest.fixture
def store_token(test_db):
    async def inner(expires_at: int, access_token="stored-access", refresh_token="stored-refresh"):
        async with get_session() as s:
            s.add(SpotifyToken(user_id="owner",
                               access_token=access_token,
                               refresh_token=refresh_token,
                               expires_at=expires_at))
    return inner

@pytest.fixture
def store_data(test_db):
    async def inner(time_range: TimeRange, fetched_at: datetime, genres=None):
        async with get_session() as s:
            s.add(SpotifyData(time_range=time_range,
                              artists=[{"id": "cached", "name": "Cached Artist", "genres": [], "images": []}],
                              tracks=[],
                              genres=genres or ["cached genre"],
                              fetched_at=fetched_at))
    return inner
