"""
Session endpoints: latest, paged list and recently finished session.

- ``GET /sessions/latest``: newest session, 404 when the store is empty.
- ``GET /sessions``: newest first; ``limit`` clamped to ``[1, 500]``
  (default 50), ``offset`` clamped to ``[0, 2**63 - 1]``.
- ``GET /sessions/recent``: newest session if it ended within the last five
  minutes, otherwise 204 with no body.

Responses use camelCase keys.

CHANGELOG:
- 2026-10-05: Add /sessions/recent (STORY-018)
- 2026-10-04: Initial creation (STORY-017)

TODO:
- None
"""

import json
import logging
from typing import Annotated

from fastapi import APIRouter, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from server.src.api.deps import Now, Reader
from server.src.db.models import ChargingSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

NO_SESSIONS_BODY = {"error": "no sessions available"}


# ---------------------------------------------------------------------------
# Pydantic response models
# ---------------------------------------------------------------------------


class SessionOut(BaseModel):
    """A completed charging session as returned by the API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    station_id: str
    plugged_at: str
    unplugged_at: str
    duration_ms: int
    kwh: float
    energy_source: str
    energy_warnings: list[str]
    error_count_during_session: int
    debounce_samples: int
    poll_interval_ms: int
    created_at: str

    @classmethod
    def from_row(cls, row: ChargingSession) -> "SessionOut":
        """Build the response model from an ORM row."""
        try:
            warnings = json.loads(row.energy_warnings or "[]")
        except ValueError:
            logger.warning("Session %s has unreadable energy_warnings", row.id)
            warnings = []
        return cls(
            id=row.id,
            station_id=row.station_id,
            plugged_at=row.plugged_at,
            unplugged_at=row.unplugged_at,
            duration_ms=row.duration_ms,
            kwh=row.kwh,
            energy_source=row.energy_source,
            energy_warnings=warnings,
            error_count_during_session=row.error_count_during_session,
            debounce_samples=row.debounce_samples,
            poll_interval_ms=row.poll_interval_ms,
            created_at=row.created_at,
        )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get(
    "/latest",
    response_model=SessionOut,
    responses={404: {"description": "No sessions stored yet"}},
)
async def latest_session(reader: Reader) -> SessionOut | JSONResponse:
    """Return the newest session.

    Returns:
        SessionOut: The newest session, or a 404 ``{"error": ...}`` body.
    """
    row = await reader.latest()
    if row is None:
        return JSONResponse(status_code=404, content=NO_SESSIONS_BODY)
    return SessionOut.from_row(row)


@router.get("", response_model=list[SessionOut])
async def list_sessions(
    reader: Reader,
    limit: Annotated[int | None, Query()] = None,
    offset: Annotated[int | None, Query()] = None,
) -> list[SessionOut]:
    """Return a page of sessions, newest first.

    Args:
        reader: Session reader.
        limit: Page size, clamped to ``[1, 500]``.
        offset: Rows to skip, clamped to ``[0, 2**63 - 1]``.

    Returns:
        list[SessionOut]: Possibly empty list of sessions.
    """
    rows = await reader.list_sessions(limit=limit, offset=offset)
    return [SessionOut.from_row(row) for row in rows]


@router.get(
    "/recent",
    response_model=SessionOut,
    responses={204: {"description": "No session finished in the last five minutes"}},
)
async def recent_session(reader: Reader, now: Now) -> SessionOut | Response:
    """Return the newest session if it ended in the last five minutes."""
    row = await reader.recent(now)
    if row is None:
        return Response(status_code=204)
    return SessionOut.from_row(row)
