"""
Error taxonomy — typed failures returned verbatim to callers.

Every component raises one of these; only the Access Gateway turns them
into the JSON error envelope. Callers branch on ``kind``, never on message
text:

- Unauthorized       — bad or expired window credential
- RateLimited        — quota exceeded for the caller identity
- PermissionDenied   — table/column/operation not allowlisted
- Malformed          — request shape invalid
- NotFound           — referenced node/entity/procedure absent
- Conflict           — optimistic-concurrency version mismatch
- BackendUnavailable — backing store timeout or connection failure

Only BackendUnavailable is safe for a blind caller retry. Conflict needs a
fresh read first; the rest are never retried automatically.
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorKind(str, enum.Enum):
    """Wire names of the error kinds."""

    UNAUTHORIZED = "Unauthorized"
    RATE_LIMITED = "RateLimited"
    PERMISSION_DENIED = "PermissionDenied"
    MALFORMED = "Malformed"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    BACKEND_UNAVAILABLE = "BackendUnavailable"


class GatewayError(Exception):
    """Base class for every typed failure surfaced by the gateway."""

    kind: ErrorKind = ErrorKind.BACKEND_UNAVAILABLE
    status_code: int = 503
    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize into the ``error`` member of the response envelope."""
        error: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.message!r}>"


class Unauthorized(GatewayError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401


class RateLimited(GatewayError):
    """Quota exceeded; ``retry_after`` is the number of seconds to the next window."""

    kind = ErrorKind.RATE_LIMITED
    status_code = 429

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message, details={"retryAfter": retry_after})
        self.retry_after = retry_after


class PermissionDenied(GatewayError):
    kind = ErrorKind.PERMISSION_DENIED
    status_code = 403


class Malformed(GatewayError):
    kind = ErrorKind.MALFORMED
    status_code = 400


class NotFound(GatewayError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class Conflict(GatewayError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class BackendUnavailable(GatewayError):
    kind = ErrorKind.BACKEND_UNAVAILABLE
    status_code = 503
    retryable = True
