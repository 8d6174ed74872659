from sqlalchemy import (
    Column, String, Text, BigInteger, DateTime, JSON, Index,
    Enum as SQLEnum, CheckConstraint
)
from sqlalchemy.orm import declarative_base

from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimeRange(str, Enum):
    short_term = "short_term"
    medium_term = "medium_term"
    long_term = "long_term"

    @property
    def label(self) -> str:
        return TIME_RANGE_LABELS[self]

TIME_RANGE_LABELS = {TimeRange.short_term: "LAST 4 WEEKS",
                     TimeRange.medium_term: "LAST 6 MONTHS",
                     TimeRange.long_term: "ALL TIME"}

Base = declarative_base()

class SpotifyToken(Base):
    """OAuth credentials of the site owner, one row per owner id."""
    __tablename__ = 'spotify_tokens'

    user_id = Column(String(64), primary_key=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(BigInteger, nullable=False)  # Epoch seconds.
    last_updated = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint('expires_at >= 0', name='chk_spotify_tokens_expires_at_positive'),
    )

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

class SpotifyData(Base):
    __tablename__ = 'spotify_data'

    time_range = Column(SQLEnum(TimeRange, name="time_range"), primary_key=True)
    artists = Column(JSON, nullable=False, default=list)
    tracks = Column(JSON, nullable=False, default=list)
    genres = Column(JSON, nullable=False, default=list)
    fetched_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_spotify_data_fetched_at', 'fetched_at'),
    )

    def to_payload(self) -> dict:
        return {"artists": self.artists,
                "tracks": self.tracks,
                "genres": self.genres,
                "timeRange": self.time_range.value}
