"""
SkillGrid Gateway — process entrypoint.

1. Configures structured logging
2. Loads settings once and freezes them into a GatewayConfig
3. Initializes the backing store schema
4. Builds the Access Gateway and serves the HTTP API

Usage:
    python -m skillgrid.main
"""

from __future__ import annotations

import logging
import sys

import structlog
import uvicorn

from skillgrid.config import load_gateway_config, settings


def configure_logging() -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=logging.getLevelName(settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Start the gateway."""
    configure_logging()
    log = structlog.get_logger()

    config = load_gateway_config(settings)
    log.info(
        "skillgrid.main.starting",
        trusted_caller=config.trusted_caller,
        token_window_seconds=config.token_window_seconds,
        rate_limit=f"{config.rate_limit_requests}/{config.rate_limit_window_seconds}s",
        tables=config.allowlist.tables,
    )

    from skillgrid.api.app import app, configure
    from skillgrid.store.database import Database

    try:
        db = Database(settings.database_url_sync, config.query_timeout_seconds)
        db.initialize()
    except Exception as e:
        log.exception("skillgrid.main.store_unavailable", error=str(e))
        sys.exit(1)

    configure(config, db)
    log.info("skillgrid.main.gateway_ready", backend=db.dialect)

    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level="info")
    log.info("skillgrid.main.shutdown")


if __name__ == "__main__":
    main()
