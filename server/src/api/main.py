"""
FastAPI application entry point for the wallbox session API.

Serves the read-only query surface over the collector's session store.
Environment variables are validated at startup; the read-only engine is
created then and disposed on shutdown. Store errors are mapped to a generic
500 response so internal details never leak to clients.

CHANGELOG:
- 2026-10-09: Add serve() entry point (STORY-019)
- 2026-10-05: Register diagnostics router (STORY-018)
- 2026-10-04: Register sessions router, map store errors to 500 (STORY-017)
- 2026-10-02: Initial creation (STORY-001)
"""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from server.src.api.diagnostics import router as diagnostics_router
from server.src.api.health import router as health_router
from server.src.api.sessions import router as sessions_router
from server.src.db.session import dispose_engine, init_engine

logger = logging.getLogger(__name__)

INTERNAL_ERROR_BODY = {"error": "internal error"}

DEFAULT_API_HOST = "0.0.0.0"
DEFAULT_API_PORT = 8080


def _load_env_config() -> dict[str, str]:
    """Load and validate required environment variables at startup.

    Returns:
        dict: Mapping of config key to value.

    Raises:
        RuntimeError: If a required environment variable is missing.
    """
    required = ["SESSIONS_DB_PATH"]
    config: dict[str, str] = {}
    missing: list[str] = []

    for key in required:
        value = os.environ.get(key)
        if not value:
            missing.append(key)
        else:
            config[key] = value

    if missing:
        raise RuntimeError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    return config


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: validate config, open and dispose the engine."""
    config = _load_env_config()
    app.state.config = config
    init_engine()
    logger.info("Session API ready, reading %s", config["SESSIONS_DB_PATH"])
    yield
    await dispose_engine()
    logger.info("Session API shutting down")


async def _store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log a store failure and return a generic 500."""
    logger.error(
        "Store error while serving %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content=INTERNAL_ERROR_BODY)


app = FastAPI(
    title="Wallbox Session API",
    description="Read-only API over completed EV charging sessions.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(SQLAlchemyError, _store_error_handler)

app.include_router(health_router)
app.include_router(sessions_router)
app.include_router(diagnostics_router)


def serve() -> None:
    """Run the API under uvicorn.

    Binds to ``API_HOST`` / ``API_PORT`` (default ``0.0.0.0:8080``).
    """
    uvicorn.run(
        app,
        host=os.environ.get("API_HOST", DEFAULT_API_HOST),
        port=int(os.environ.get("API_PORT", str(DEFAULT_API_PORT))),
        log_level="info",
    )


if __name__ == "__main__":
    serve()
