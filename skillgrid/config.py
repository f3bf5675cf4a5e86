"""SkillGrid Gateway — Application configuration via environment variables."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic_settings import BaseSettings

from skillgrid.access.allowlist import AllowlistRegistry


class GatewaySettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── Backing store ──────────────────────────────────────────
    postgres_user: str = "skillgrid"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "skillgrid"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url: str = ""
    query_timeout_seconds: float = 10.0

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Window credentials ─────────────────────────────────────
    shared_secret_prefix: str = "change-me-shared-secret-"
    token_window_seconds: int = 3600
    token_label_format: str = "%Y%m%d%H%M"
    trusted_caller: str = "dashboard-client"

    # ── Rate limiting ──────────────────────────────────────────
    rate_limit_requests: int = 120
    rate_limit_window_seconds: int = 60

    # ── Read path ──────────────────────────────────────────────
    allowlist_path: str = ""
    max_rows: int = 1000
    max_rows_with_columns: int = 5000

    # ── API ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = GatewaySettings()


@dataclass(frozen=True)
class GatewayConfig:
    """
    Immutable runtime configuration, built once at process start.

    Components receive this object (or the pieces they need) explicitly;
    nothing reads ambient settings while a request is being handled.
    """

    secret_prefix: str
    trusted_caller: str
    allowlist: AllowlistRegistry
    token_window_seconds: int = 3600
    token_label_format: str = "%Y%m%d%H%M"
    rate_limit_requests: int = 120
    rate_limit_window_seconds: int = 60
    max_rows: int = 1000
    max_rows_with_columns: int = 5000
    query_timeout_seconds: float = 10.0


def load_gateway_config(source: GatewaySettings | None = None) -> GatewayConfig:
    """Freeze settings (and the allowlist file, if configured) into a GatewayConfig."""
    source = source or settings
    if source.allowlist_path:
        allowlist = AllowlistRegistry.from_json(Path(source.allowlist_path).read_text("utf-8"))
    else:
        allowlist = AllowlistRegistry.default()

    return GatewayConfig(
        secret_prefix=source.shared_secret_prefix,
        trusted_caller=source.trusted_caller,
        allowlist=allowlist,
        token_window_seconds=source.token_window_seconds,
        token_label_format=source.token_label_format,
        rate_limit_requests=source.rate_limit_requests,
        rate_limit_window_seconds=source.rate_limit_window_seconds,
        max_rows=source.max_rows,
        max_rows_with_columns=source.max_rows_with_columns,
        query_timeout_seconds=source.query_timeout_seconds,
    )
