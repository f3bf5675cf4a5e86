"""
SkillGrid Gateway — HTTP surface.

FastAPI application exposing the Access Gateway to dashboards, reporting
tools and administrative bulk-edit UIs:

- POST /api/v1/access — read or sync envelope, ``Authorization: Bearer <credential>``
- GET  /health        — liveness and audit trail availability

The HTTP layer only translates transport details (headers, client address,
status codes); every decision is made by the gateway.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from skillgrid import __version__
from skillgrid.config import GatewayConfig, load_gateway_config, settings
from skillgrid.gateway import AccessGateway, RawRequest
from skillgrid.store.database import Database

logger = logging.getLogger(__name__)


class ApiState:
    """Application state injected at startup (or by tests)."""

    def __init__(self) -> None:
        self.gateway: AccessGateway | None = None
        self.db: Database | None = None
        self.startup_time: datetime = datetime.now(timezone.utc)


state = ApiState()


def bearer_credential(authorization: str | None) -> str | None:
    """Extract the credential from an ``Authorization`` header, if present."""
    raw = (authorization or "").strip()
    if not raw:
        return None
    scheme, _, token = raw.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return raw


def configure(config: GatewayConfig, db: Database) -> AccessGateway:
    """Build the gateway for this process and attach it to the app state."""
    state.db = db
    state.gateway = AccessGateway.from_config(config, db)
    return state.gateway


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup & shutdown lifecycle — build the gateway unless already injected."""
    if state.gateway is None:
        db = Database(settings.database_url_sync, settings.query_timeout_seconds)
        db.initialize()
        configure(load_gateway_config(settings), db)
        logger.info("Gateway initialized on %s backend", db.dialect)

    yield

    if state.db is not None:
        state.db.engine.dispose()
    logger.info("SkillGrid Gateway shut down")


app = FastAPI(
    title="SkillGrid Gateway",
    description="Access control and synchronization layer for the skill hierarchy",
    version=__version__,
    lifespan=lifespan,
)


@app.post("/api/v1/access")
async def access(
    request: Request,
    authorization: str | None = Header(default=None),
):
    """Single entry point for read and sync envelopes."""
    if state.gateway is None:
        return JSONResponse(
            {
                "success": False,
                "error": {"kind": "BackendUnavailable", "message": "Gateway not initialized"},
            },
            status_code=503,
        )

    # Caller headers are never part of the rate-limit key; only the peer address is.
    caller_key = request.client.host if request.client else "anonymous"
    raw = RawRequest(
        body=await request.body(),
        credential=bearer_credential(authorization),
        caller_key=caller_key,
    )
    response = await run_in_threadpool(state.gateway.handle, raw)
    return JSONResponse(response.body, status_code=response.status_code, headers=response.headers)


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy" if state.gateway is not None else "starting",
        "version": __version__,
        "uptime_seconds": (datetime.now(timezone.utc) - state.startup_time).total_seconds(),
        "backend": state.db.dialect if state.db is not None else None,
        "audit_available": state.gateway is not None,
        "tables": state.gateway.allowlist.tables if state.gateway is not None else [],
    }
