"""Structured logging setup."""

import logging
import sys
import time
from typing import Any, cast

import structlog

from fleet.config import settings

# Paths polled too often to be worth an access log line at INFO
QUIET_PATHS = ("/health", "/jobs/next")


def setup_logging() -> None:
    """Configure structured logging for the coordinator and agents."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            (
                structlog.dev.ConsoleRenderer()
                if settings.debug
                else structlog.processors.JSONRenderer()
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance for the given name."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))


def bind_context(**values: Any) -> None:
    """Attach key/values (worker_id, job_id...) to every log line of this task."""
    structlog.contextvars.bind_contextvars(**values)


class AccessLogMiddleware:
    """ASGI middleware logging each HTTP request in access log format."""

    def __init__(self, app: Any) -> None:
        self.app = app
        self.logger = get_logger("access")

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        status_code = 0

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            path = scope.get("path", "-")
            query = scope.get("query_string", b"").decode()
            client = scope.get("client") or ("-", 0)

            quiet = path in QUIET_PATHS and status_code < 400
            log = self.logger.debug if quiet else self.logger.info
            log(
                "request",
                method=scope.get("method", "-"),
                path=f"{path}?{query}" if query else path,
                status=status_code,
                client=client[0],
                duration_ms=round(duration_ms, 2),
            )
