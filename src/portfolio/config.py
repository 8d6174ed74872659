import os
from datetime import timedelta

from dotenv import load_dotenv
load_dotenv()

SCOPES = ['user-top-read',
          'user-read-private',
          'user-read-email']
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8888/callback"

ARTIST_LIMIT = 6
TRACK_LIMIT = 5
GENRE_LIMIT = 6
CACHE_TTL = timedelta(hours=1)

# Hosts the portfolio page may load artwork from.
IMAGE_HOSTS = ["i.scdn.co",
               "mosaic.scdn.co",
               "wrapped-images.spotifycdn.com",
               "image-cdn-fa.spotifycdn.com",
               "daily-mix.scdn.co",
               "seeded-session-images.scdn.co"]

SPOTIFY_ENV = ["SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_SECRET"]
DATABASE_ENV = ["DATABASE_URL", "POSTGRES_HOST"]


def get_env(key: str) -> str:
    val = os.getenv(key)
    if not val:
        raise RuntimeError(f"missing required env var: {key}")
    return val

def redirect_uri() -> str:
    return os.getenv("SPOTIFY_REDIRECT_URI", DEFAULT_REDIRECT_URI)

def owner_id() -> str:
    """Row key of the single user whose tokens and stats are served."""
    return os.getenv("SPOTIFY_OWNER", "owner")

def portfolio_name() -> str:
    return os.getenv("PORTFOLIO_NAME", owner_id()).upper()

def social_links() -> dict[str, str]:
    """Parse PORTFOLIO_SOCIALS, e.g. 'youtube=https://...,instagram=https://...'."""
    links = {}
    for entry in os.getenv("PORTFOLIO_SOCIALS", "").split(","):
        if "=" not in entry:
            continue

        platform, url = entry.split("=", 1)
        if platform.strip() and url.strip():
            links[platform.strip().lower()] = url.strip()

    return links

def database_configured() -> bool:
    return any(os.getenv(key) for key in DATABASE_ENV)
