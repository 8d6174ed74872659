import asyncio
import logging

import spotipy
from spotipy.cache_handler import MemoryCacheHandler
from spotipy.oauth2 import SpotifyOAuth

from models import TimeRange
from portfolio.config import SCOPES, ARTIST_LIMIT, TRACK_LIMIT, GENRE_LIMIT, get_env, redirect_uri

LOGGER = logging.getLogger(__name__)


def get_sp_oauth(state: str | None = None) -> SpotifyOAuth:
    # Tokens are kept in the database, spotipy only gets a throwaway memory cache.
    return SpotifyOAuth(
        client_id=get_env("SPOTIFY_CLIENT_ID"),
        client_secret=get_env("SPOTIFY_CLIENT_SECRET"),
        redirect_uri=redirect_uri(),
        scope=SCOPES,
        state=state,
        open_browser=False,
        cache_handler=MemoryCacheHandler()
    )

def get_spotipy(access_token: str) -> spotipy.Spotify:
    return spotipy.Spotify(auth=access_token, requests_timeout=10, retries=0)

def refresh_access_token(refresh_token: str) -> dict:
    LOGGER.info("Refreshing Spotify access token.")
    token_info = get_sp_oauth().refresh_access_token(refresh_token)
    LOGGER.info("Refreshed Spotify access token.")
    return token_info

async def fetch_top_items(access_token: str, time_range: TimeRange) -> tuple[list[dict], list[dict]]:
    """Top artists and top tracks of the token's user, fetched concurrently."""
    sp = get_spotipy(access_token)
    LOGGER.debug(f"Fetching top items for {time_range.value}.")

    artists, tracks = await asyncio.gather(
        asyncio.to_thread(sp.current_user_top_artists, limit=ARTIST_LIMIT, time_range=time_range.value),
        asyncio.to_thread(sp.current_user_top_tracks, limit=TRACK_LIMIT, time_range=time_range.value)
    )

    LOGGER.info(f"Fetched {len(artists['items'])} artists and {len(tracks['items'])} tracks " \
                f"for {time_range.value}.")
    return artists["items"], tracks["items"]

def extract_genres(artists: list[dict], limit: int = GENRE_LIMIT) -> list[str]:
    """Genres of all artists, de-duplicated in first-seen order."""
    genres = dict.fromkeys(genre for artist in artists
                           for genre in artist.get("genres") or [])
    return list(genres)[:limit]
