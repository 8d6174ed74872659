"""
One-time Spotify authorization for the portfolio owner.

Prints an authorize URL, takes the redirected callback URL from stdin,
exchanges its code for tokens and stores them in the database, where the
web app picks them up (and refreshes them) from then on.
"""
import os
import sys
import asyncio
import secrets
import traceback
import logging
LOGGER = logging.getLogger(__name__)

from spotipy.exceptions import SpotifyOauthError
from spotipy.oauth2 import SpotifyOAuth
from sqlalchemy.exc import SQLAlchemyError

from db import get_db_manager
from logger import setup_logging
from portfolio.config import SPOTIFY_ENV, DATABASE_ENV, redirect_uri, database_configured, owner_id
from portfolio.spotify import get_sp_oauth
from portfolio.tokens import store_token_info


class AuthError(Exception):
    pass


def check_env() -> bool:
    print("Environment variables loaded:")
    for key in SPOTIFY_ENV + DATABASE_ENV:
        print(f"{key}: {'✓' if os.getenv(key) else '✗'}")

    if not database_configured():
        print("Missing database credentials (DATABASE_URL or POSTGRES_*).", file=sys.stderr)
        return False

    if not all(os.getenv(key) for key in SPOTIFY_ENV):
        print("Missing Spotify credentials.", file=sys.stderr)
        return False

    return True

def parse_callback(callback_url: str, expected_state: str) -> str:
    """Authorization code from the pasted callback URL, after checking its state."""
    try:
        state, code = SpotifyOAuth.parse_auth_response_url(callback_url)
    except SpotifyOauthError as e:
        raise AuthError(f"Authorization was refused: {e}")

    if not code:
        raise AuthError("No code found in callback URL")

    if state != expected_state:
        raise AuthError(f"State mismatch. Expected: {expected_state} Got: {state}")

    return code

def exchange_code(sp_oauth: SpotifyOAuth, code: str) -> dict:
    """Full token info for `code`, read back from the OAuth manager's cache after the exchange."""
    try:
        sp_oauth.get_access_token(code, as_dict=False, check_cache=False)
    except SpotifyOauthError as e:
        raise AuthError(f"Failed to exchange code for tokens: {e}")

    if not (token_info := sp_oauth.get_cached_token()):
        raise AuthError("Token exchange returned no usable token (missing scopes?)")

    return token_info

async def authorize() -> None:
    print(f"\nIMPORTANT: Make sure to add {redirect_uri()} to your Spotify App's Redirect URIs")
    print("You can do this at https://developer.spotify.com/dashboard/applications\n")

    state = secrets.token_urlsafe(8)
    sp_oauth = get_sp_oauth(state=state)

    print("Visit this URL to authorize Spotify:")
    print(sp_oauth.get_authorize_url(state=state))

    print("\nAfter authorizing, you will be redirected to a non-existent page.")
    callback_url = input("Copy the URL from your browser and paste it here: ").strip()

    code = parse_callback(callback_url, state)
    token_info = exchange_code(sp_oauth, code)

    try:
        await store_token_info(token_info)
    except SQLAlchemyError as e:
        raise AuthError(f"Error storing tokens: {e}")
    finally:
        await get_db_manager().cleanup()

    LOGGER.info(f"Stored Spotify tokens for '{owner_id()}'.")
    print("Successfully authenticated and stored tokens!")

def main():
    setup_logging()

    if not check_env():
        sys.exit(1)

    try:
        asyncio.run(authorize())
    except AuthError as e:
        LOGGER.error(str(e))
        sys.exit(1)
    except Exception:
        LOGGER.error(f"Error: {traceback.format_exc()}")
        sys.exit(1)

if __name__ == "__main__":
    main()
