import asyncio
import logging
import time

from sqlalchemy import select

from db import pass_session_capable
from models import SpotifyToken, utc_now
from portfolio import spotify
from portfolio.config import owner_id

LOGGER = logging.getLogger(__name__)


class TokenError(Exception):
    pass


def expires_at(token_info: dict) -> int:
    if "expires_at" in token_info:
        return int(token_info["expires_at"])
    return int(time.time()) + int(token_info["expires_in"])


@pass_session_capable
async def get_token(session=None) -> SpotifyToken:
    user_id = owner_id()
    result = await session.execute(select(SpotifyToken).where(SpotifyToken.user_id == user_id))

    if (token := result.scalar_one_or_none()) is None:
        raise TokenError(f"No Spotify token stored for '{user_id}', run sp_tokens.py first.")

    return token

async def get_valid_access_token(now: float | None = None) -> str:
    """Stored access token, refreshed (and saved) first when it has expired."""
    now = time.time() if now is None else now
    # Read and write in separate sessions, no connection is held over the Spotify call.
    token = await get_token()

    if not token.is_expired(now):
        return token.access_token

    LOGGER.info(f"Access token of '{token.user_id}' expired, refreshing.")
    token_info = await asyncio.to_thread(spotify.refresh_access_token, token.refresh_token)

    token = await save_refreshed_token(token_info)
    return token.access_token

@pass_session_capable
async def save_refreshed_token(token_info: dict, session=None) -> SpotifyToken:
    token = await get_token(session=session)

    token.access_token = token_info["access_token"]
    token.expires_at = expires_at(token_info)
    token.last_updated = utc_now()
    # Spotify only sometimes rotates the refresh token.
    if token_info.get("refresh_token"):
        token.refresh_token = token_info["refresh_token"]

    await session.flush()
    return token

@pass_session_capable
async def store_token_info(token_info: dict, session=None) -> SpotifyToken:
    """Insert or overwrite the owner's credentials from a token endpoint response."""
    user_id = owner_id()
    token = await session.get(SpotifyToken, user_id)

    if token is None:
        LOGGER.info(f"Storing new Spotify token for '{user_id}'.")
        token = SpotifyToken(user_id=user_id)
        session.add(token)
    else:
        LOGGER.info(f"Overwriting Spotify token for '{user_id}'.")

    token.access_token = token_info["access_token"]
    token.refresh_token = token_info["refresh_token"]
    token.expires_at = expires_at(token_info)
    token.last_updated = utc_now()

    await session.flush()
    return token
