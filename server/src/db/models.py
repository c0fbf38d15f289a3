"""
SQLAlchemy ORM models for the session store.

Maps the tables written by the collector's session writer. The API only
reads them: the schema is owned and migrated by the collector, so these
models are never used to create tables.

Timestamps are stored as ISO-8601 UTC text with millisecond precision and a
``Z`` suffix, which sorts chronologically as plain text.

CHANGELOG:
- 2026-10-08: Add log event tables (STORY-015)
- 2026-10-04: Initial creation (STORY-017)

TODO:
- None
"""

from sqlalchemy import Double, ForeignKey, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all session store models."""

    pass


class ChargingSession(Base):
    """A completed plug-in to plug-out charging episode.

    Attributes:
        id: Row identifier (uuid4 text) assigned by the writer.
        station_id: Station the session belongs to.
        plugged_at: Instant the plug-in was first observed.
        unplugged_at: Instant the unplug was first observed.
        duration_ms: ``unplugged_at - plugged_at`` in milliseconds.
        kwh: Energy delivered, never negative.
        energy_source: Strategy that produced ``kwh``.
        energy_warnings: JSON array of energy strategy warning codes.
        error_count_during_session: Failed or faulted polls while active.
        debounce_samples: Debounce window the session was detected with.
        poll_interval_ms: Poll interval the session was detected with.
        episode_key: Natural key, unique per station and time span.
        raw_start: JSON payload of the reading that confirmed the plug-in.
        raw_end: JSON payload of the reading that confirmed the unplug.
        created_at: Instant the row was written.
    """

    __tablename__ = "charging_sessions"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    station_id: Mapped[str] = mapped_column(Text, nullable=False)
    plugged_at: Mapped[str] = mapped_column(Text, nullable=False)
    unplugged_at: Mapped[str] = mapped_column(Text, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    kwh: Mapped[float] = mapped_column(Double, nullable=False)
    energy_source: Mapped[str] = mapped_column(Text, nullable=False)
    energy_warnings: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    error_count_during_session: Mapped[int] = mapped_column(Integer, nullable=False)
    debounce_samples: Mapped[int] = mapped_column(Integer, nullable=False)
    poll_interval_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    episode_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    raw_start: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_end: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of the ChargingSession."""
        return (
            f"ChargingSession(id={self.id!r}, station_id={self.station_id!r}, "
            f"plugged_at={self.plugged_at!r}, kwh={self.kwh!r})"
        )


class LogEvent(Base):
    """An anomaly or notable event recorded by the collector."""

    __tablename__ = "log_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    level: Mapped[str] = mapped_column(Text, nullable=False)
    code: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    station_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)


class ChargingSessionLogEvent(Base):
    """Link between a session and the log events recorded while it was active."""

    __tablename__ = "charging_session_log_events"

    session_id: Mapped[str] = mapped_column(
        Text, ForeignKey("charging_sessions.id", ondelete="CASCADE"), primary_key=True
    )
    log_event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("log_events.id", ondelete="CASCADE"), primary_key=True
    )
