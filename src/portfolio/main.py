import os
import sys
import logging
import traceback
import contextlib
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ConfigDict, Field

from db import get_db_manager
from logger import setup_logging, parse_level
from models import TimeRange
from portfolio.config import IMAGE_HOSTS, portfolio_name, social_links
from portfolio.stats import get_top_items

LOGGER = logging.getLogger(__name__)

TEMPLATES = Jinja2Templates(directory=Path(__file__).parent / "templates")

TABS = [("artists", "TOP ARTISTS"),
        ("tracks", "TOP TRACKS"),
        ("genres", "GENRES")]

CONTENT_SECURITY_POLICY = "; ".join([
    "default-src 'self'",
    "script-src 'self' 'unsafe-inline'",
    "style-src 'self' 'unsafe-inline'",
    "connect-src 'self'",
    "img-src 'self' " + " ".join(f"https://{host}" for host in IMAGE_HOSTS),
])


class TopItems(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    artists: list[dict]
    tracks: list[dict]
    genres: list[str]
    time_range: TimeRange = Field(alias="timeRange")


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await get_db_manager().cleanup()

app = FastAPI(title="Spotify Portfolio", lifespan=lifespan)


@app.get("/health", tags=["system"])
def health() -> dict:
    return {"status": "ok"}

@app.get("/", response_class=HTMLResponse)
async def home(request: Request):
    response = TEMPLATES.TemplateResponse(request, "index.html", {
        "name": portfolio_name(),
        "socials": social_links(),
        "tabs": TABS,
        "time_ranges": list(TimeRange),
        "default_range": TimeRange.medium_term,
    })
    response.headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
    return response

@app.get("/api/spotify/data", response_model=TopItems, tags=["spotify"])
async def spotify_data(time_range: TimeRange = Query(TimeRange.medium_term, alias="timeRange")):
    try:
        return await get_top_items(time_range)
    except Exception:
        LOGGER.error(f"Error fetching Spotify data: {traceback.format_exc()}")
        return JSONResponse({"error": "Failed to fetch Spotify data"}, status_code=500)


def run():
    log_level = None  # Falls back to LOG_LEVEL.
    if "-ll" in sys.argv:
        idx = sys.argv.index("-ll") + 1
        if idx >= len(sys.argv): raise ValueError("Expected log level value after -ll, one of ([d]ebug, [i]nfo, [w]arning, [e]rror).")
        log_level = parse_level(sys.argv[idx])

    setup_logging(console_level=log_level)
    LOGGER.info("=== Spotify Portfolio Starting ===")

    uvicorn.run(app,
                host=os.getenv("HOST", "127.0.0.1"),
                port=int(os.getenv("PORT", 8000)),
                log_config=None)

if __name__ == "__main__":
    run()
