"""
Token Authenticator — stateless, time-windowed bearer credentials.

A credential is ``secret_prefix + window_label``, where the window label is
the current UTC time truncated to ``window_seconds`` and rendered with a
fixed ``strftime`` format. Validation recomputes the credential for the
current window and the one before it, so a caller whose clock sits just
across a boundary is still accepted; two windows late is rejected.

Nothing is stored server-side. Validity is a pure function of
(shared secret, current time, presented string). The consequence is that
there is no logout and no per-caller revocation: a leaked credential stays
valid until its window ages out, and the only remediation is rotating the
shared secret. Actor identity is the configured trusted-caller class, not a
claim carried by the credential.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from skillgrid.contracts.errors import Unauthorized
from skillgrid.contracts.schema import utc_now


@dataclass(frozen=True)
class Authenticated:
    """Successful authentication result."""

    actor: str
    window_label: str


class TokenAuthenticator:
    """Validates window credentials against a shared secret prefix."""

    def __init__(
        self,
        secret_prefix: str,
        actor: str,
        window_seconds: int = 3600,
        label_format: str = "%Y%m%d%H%M",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not secret_prefix:
            raise ValueError("secret_prefix must not be empty")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.secret_prefix = secret_prefix
        self.actor = actor
        self.window_seconds = window_seconds
        self.label_format = label_format
        self.clock = clock

    def window_label(self, moment: datetime, windows_back: int = 0) -> str:
        """Label of the window containing ``moment``, shifted back ``windows_back`` windows."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        epoch = int(moment.timestamp())
        start = (epoch // self.window_seconds - windows_back) * self.window_seconds
        return datetime.fromtimestamp(start, tz=timezone.utc).strftime(self.label_format)

    def issue(self, now: datetime | None = None) -> str:
        """Credential valid for the window containing ``now``."""
        return self.secret_prefix + self.window_label(now or self.clock())

    def authenticate(self, presented: str | None, now: datetime | None = None) -> Authenticated:
        """
        Check a presented credential.

        Raises:
            Unauthorized: Missing credential, or no match for the current or
                previous window.
        """
        if not presented:
            raise Unauthorized("Missing credential")

        moment = now or self.clock()
        for windows_back in (0, 1):
            label = self.window_label(moment, windows_back)
            expected = self.secret_prefix + label
            if hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
                return Authenticated(actor=self.actor, window_label=label)

        raise Unauthorized("Credential is invalid or expired")
