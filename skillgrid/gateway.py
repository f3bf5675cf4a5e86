"""
Access Gateway — the public entry point composing the whole pipeline.

``handle()`` runs every request through the same stages, each of which can
short-circuit with a typed error:

1. rate limit        — fixed-window counter keyed by caller identity
2. authentication    — stateless window credential
3. shape validation  — JSON envelope must be a ``read`` or a ``sync``
4. allowlist         — enforced by the router (reads) or here (sync)
5. execution         — Query Router or Bulk Synchronization Engine
6. audit             — written by the sync engine inside its transaction
7. serialization     — success envelope or ``{"success": false, "error": ...}``

The gateway owns no mutable state of its own; everything it needs is
injected, usually via ``AccessGateway.from_config``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from skillgrid.access.allowlist import AllowlistRegistry
from skillgrid.access.rate_limit import FixedWindowRateLimiter
from skillgrid.access.tokens import Authenticated, TokenAuthenticator
from skillgrid.audit.logger import AuditLogger
from skillgrid.config import GatewayConfig
from skillgrid.contracts.errors import BackendUnavailable, GatewayError, Malformed, RateLimited
from skillgrid.contracts.schema import (
    ACCESS_REQUEST_ADAPTER,
    Operation,
    ReadRequest,
    SyncRequest,
    utc_now,
)
from skillgrid.routing.router import QueryRouter
from skillgrid.store.database import Database
from skillgrid.sync.engine import SyncEngine

logger = logging.getLogger(__name__)

SYNC_TABLE = "assignments"


@dataclass(frozen=True)
class RawRequest:
    """Transport-neutral request as received from a caller."""

    body: bytes | str | dict[str, Any]
    credential: str | None = None
    # peer address observed by the transport, never a caller-supplied value
    caller_key: str = "anonymous"


@dataclass(frozen=True)
class GatewayResponse:
    """Status, JSON-ready body and extra headers for the transport layer."""

    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return bool(self.body.get("success"))


class AccessGateway:
    """Composes authentication, rate limiting, routing, sync and audit."""

    def __init__(
        self,
        authenticator: TokenAuthenticator,
        rate_limiter: FixedWindowRateLimiter,
        allowlist: AllowlistRegistry,
        router: QueryRouter,
        sync_engine: SyncEngine,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.allowlist = allowlist
        self.router = router
        self.sync_engine = sync_engine
        self.clock = clock
        self._handlers: dict[type, Callable[[Any, Authenticated, str], GatewayResponse]] = {
            ReadRequest: self._handle_read,
            SyncRequest: self._handle_sync,
        }

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        db: Database,
        clock: Callable[[], datetime] = utc_now,
    ) -> AccessGateway:
        """Wire every component from one immutable configuration."""
        audit = AuditLogger(db, clock=clock)
        return cls(
            authenticator=TokenAuthenticator(
                secret_prefix=config.secret_prefix,
                actor=config.trusted_caller,
                window_seconds=config.token_window_seconds,
                label_format=config.token_label_format,
                clock=clock,
            ),
            rate_limiter=FixedWindowRateLimiter(
                limit=config.rate_limit_requests,
                window_seconds=config.rate_limit_window_seconds,
                clock=clock,
            ),
            allowlist=config.allowlist,
            router=QueryRouter(
                db,
                config.allowlist,
                max_rows=config.max_rows,
                max_rows_with_columns=config.max_rows_with_columns,
            ),
            sync_engine=SyncEngine(db, audit, clock=clock),
            clock=clock,
        )

    def rate_limit_key(self, raw: RawRequest) -> str:
        """Quota bucket: the configured caller identity class plus the transport peer."""
        return f"{self.authenticator.actor}:{raw.caller_key}"

    def handle(self, raw: RawRequest) -> GatewayResponse:
        """Run one request through the full pipeline. Never raises."""
        correlation_id = uuid4().hex
        try:
            self.rate_limiter.hit(self.rate_limit_key(raw))
            identity = self.authenticator.authenticate(raw.credential)
            request = self.parse(raw.body)
            handler = self._handlers[type(request)]
            response = handler(request, identity, correlation_id)
        except GatewayError as exc:
            return self._error(exc, correlation_id)
        except Exception:
            logger.exception("Unhandled failure: correlation=%s", correlation_id)
            return self._error(
                BackendUnavailable("Internal failure while handling the request"),
                correlation_id,
            )

        response.headers.setdefault("X-Correlation-ID", correlation_id)
        return response

    @staticmethod
    def parse(body: bytes | str | dict[str, Any]) -> ReadRequest | SyncRequest:
        """
        Validate the JSON envelope.

        Raises:
            Malformed: Invalid JSON or a shape matching neither operation kind.
        """
        try:
            if isinstance(body, dict):
                return ACCESS_REQUEST_ADAPTER.validate_python(body)
            return ACCESS_REQUEST_ADAPTER.validate_json(body)
        except ValidationError as exc:
            problems = [
                f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
                for err in exc.errors()
            ]
            raise Malformed(
                "Request does not match a read or sync envelope",
                details={"problems": problems},
            ) from exc

    # ── Handlers ────────────────────────────────────────────────

    def _handle_read(
        self, request: ReadRequest, identity: Authenticated, correlation_id: str
    ) -> GatewayResponse:
        result = self.router.execute(request, correlation_id=correlation_id)
        body = {
            "success": True,
            "data": to_jsonable_python(result.rows),
            "table": result.table,
            "totalRecords": result.total_records,
            "truncated": result.truncated,
            "timestamp": self.clock().isoformat(),
        }
        return GatewayResponse(status_code=200, body=body)

    def _handle_sync(
        self, request: SyncRequest, identity: Authenticated, correlation_id: str
    ) -> GatewayResponse:
        self.allowlist.check(SYNC_TABLE, None, Operation.SYNC)
        report = self.sync_engine.sync(
            request.entity_id,
            request.assignments,
            actor=identity.actor,
            correlation_id=correlation_id,
        )
        return GatewayResponse(
            status_code=200 if report.succeeded else 409,
            body=report.to_wire(),
        )

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _error(exc: GatewayError, correlation_id: str) -> GatewayResponse:
        headers = {"X-Correlation-ID": correlation_id}
        if isinstance(exc, RateLimited):
            headers["Retry-After"] = str(exc.retry_after)
        logger.info(
            "Request rejected: correlation=%s kind=%s message=%s",
            correlation_id, exc.kind.value, exc.message,
        )
        return GatewayResponse(
            status_code=exc.status_code,
            body={"success": False, "error": exc.to_dict()},
            headers=headers,
        )
