"""
Diagnostics endpoints for the session store.

- ``GET /diagnostics/db``: schema version, row counts and newest session.
- ``GET /diagnostics/log-events``: recent collector log events, each with
  the id of the session it was recorded in (if any).

CHANGELOG:
- 2026-10-08: Add /diagnostics/log-events (STORY-015)
- 2026-10-05: Initial creation (STORY-018)

TODO:
- None
"""

import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from server.src.api.deps import Reader
from server.src.api.sessions import SessionOut
from server.src.db.models import LogEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/diagnostics", tags=["diagnostics"])


class DbDiagnosticsOut(BaseModel):
    """Summary of the session store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    schema_version: int
    sessions_count: int
    log_events_count: int
    latest_session: SessionOut | None


class LogEventOut(BaseModel):
    """A collector log event."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    created_at: str
    level: str
    code: str
    message: str
    source: str
    station_id: str | None
    details: Any = None
    session_id: str | None = None


def _event_out(event: LogEvent, session_id: str | None) -> LogEventOut:
    details = None
    if event.details_json:
        try:
            details = json.loads(event.details_json)
        except ValueError:
            details = event.details_json
    return LogEventOut(
        id=event.id,
        created_at=event.created_at,
        level=event.level,
        code=event.code,
        message=event.message,
        source=event.source,
        station_id=event.station_id,
        details=details,
        session_id=session_id,
    )


@router.get("/db", response_model=DbDiagnosticsOut)
async def db_diagnostics(reader: Reader) -> DbDiagnosticsOut:
    """Return schema version, counts and the newest session."""
    summary = await reader.diagnostics()
    latest = summary["latest_session"]
    return DbDiagnosticsOut(
        schema_version=summary["schema_version"],
        sessions_count=summary["sessions_count"],
        log_events_count=summary["log_events_count"],
        latest_session=SessionOut.from_row(latest) if latest is not None else None,
    )


@router.get("/log-events", response_model=list[LogEventOut])
async def log_events(
    reader: Reader,
    limit: Annotated[int | None, Query()] = None,
) -> list[LogEventOut]:
    """Return recent log events, newest first.

    Args:
        reader: Session reader.
        limit: Number of events, clamped to ``[1, 500]`` (default 50).
    """
    rows = await reader.recent_log_events(limit=limit)
    return [_event_out(event, session_id) for event, session_id in rows]
