"""structlog configuration for test sessions and CLI helpers."""

from __future__ import annotations

import sys

import structlog

_configured = False


def configure_logging(force: bool = False) -> None:
    """Configure structlog for JSON output to stderr, or console output on a TTY.

    Safe to call more than once; only the first call (or a forced one) applies.
    """
    global _configured
    if _configured and not force:
        return
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )
    _configured = True


def bind_scenario(case_id: int | None, cluster_name: str, provider: str) -> None:
    """Attach scenario identity to every log line emitted by the current thread."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(case_id=case_id, cluster=cluster_name, provider=provider)


def unbind_scenario() -> None:
    structlog.contextvars.clear_contextvars()
