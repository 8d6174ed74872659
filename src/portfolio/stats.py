import logging
import traceback
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from db import pass_session_capable
from models import SpotifyData, TimeRange
from portfolio import spotify
from portfolio.config import CACHE_TTL
from portfolio.tokens import get_valid_access_token

LOGGER = logging.getLogger(__name__)


def _as_utc(moment: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo.
    return moment.replace(tzinfo=timezone.utc) if moment.tzinfo is None else moment

def is_fresh(row: SpotifyData | None, now: datetime) -> bool:
    return row is not None and now - _as_utc(row.fetched_at) < CACHE_TTL

@pass_session_capable
async def get_cached(time_range: TimeRange, session=None) -> SpotifyData | None:
    return await session.get(SpotifyData, time_range)

@pass_session_capable
async def store_cache(time_range: TimeRange, artists: list[dict], tracks: list[dict],
                      genres: list[str], now: datetime, session=None) -> SpotifyData:
    row = await session.get(SpotifyData, time_range)
    if row is None:
        row = SpotifyData(time_range=time_range)
        session.add(row)

    row.artists = artists
    row.tracks = tracks
    row.genres = genres
    row.fetched_at = now

    await session.flush()
    LOGGER.debug(f"Cached {len(artists)} artists, {len(tracks)} tracks and " \
                 f"{len(genres)} genres for {time_range.value}.")
    return row

async def get_top_items(time_range: TimeRange, now: datetime | None = None) -> dict:
    """Top artists, tracks and genres for a range, served from cache while it's under an hour old."""
    now = now or datetime.now(timezone.utc)

    cached = await get_cached(time_range)
    if is_fresh(cached, now):
        LOGGER.debug(f"Serving cached {time_range.value} data from {cached.fetched_at}.")
        return cached.to_payload()

    LOGGER.info(f"Cache for {time_range.value} is {'stale' if cached else 'empty'}, fetching from Spotify.")
    access_token = await get_valid_access_token(now=now.timestamp())
    artists, tracks = await spotify.fetch_top_items(access_token, time_range)
    genres = spotify.extract_genres(artists)

    try:
        await store_cache(time_range, artists, tracks, genres, now)
    except SQLAlchemyError:
        LOGGER.error(f"Error storing {time_range.value} data: {traceback.format_exc()}")

    return {"artists": artists,
            "tracks": tracks,
            "genres": genres,
            "timeRange": time_range.value}
