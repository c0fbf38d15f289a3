"""
Liveness endpoint for the session API.

``GET /health`` returns ``{"status": "ok"}`` without touching the session
store, so it stays green while the collector holds the write lock. Intended
for Docker HEALTHCHECK and internal monitoring.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    """Report that the API process is alive.

    Returns:
        dict: ``{"status": "ok"}``.
    """
    return {"status": "ok"}
