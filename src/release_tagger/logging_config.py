"""Structured logging configuration.

Every module logs through structlog so warnings about unassociated PRs or
unreachable commits carry their context as fields rather than prose:

  {"event": "merge_commit_not_found", "pr_number": 42, "sha": "..."}

can be grepped, filtered, and shipped to a log pipeline as-is.

Usage:
    from release_tagger.logging_config import bind_run_context, get_logger, setup_logging

    setup_logging(environment="production")
    bind_run_context(repo="myorg/api", release_branch="develop")
    logger = get_logger(__name__)
    logger.info("associating_prs", count=3, total=10)
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog


def setup_logging(
    environment: str | None = None,
    log_level: str | None = None,
) -> None:
    """Configure structured logging for the application.

    In development: Pretty-printed, colorized output for readability.
    In production: JSON output, one event per line.

    Args:
        environment: "development" or "production". Reads from
                     ENVIRONMENT env var if not provided.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
                   Reads from LOG_LEVEL env var if not provided.
    """
    env = environment or os.environ.get("ENVIRONMENT", "development")
    level = log_level or os.environ.get("LOG_LEVEL", "INFO")

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if env == "production":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    # Logs go to stderr so the CLI's JSON output on stdout stays parseable.
    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # httpx logs every request through the standard library logger.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
    )


def bind_run_context(**fields: Any) -> None:
    """Bind run-level fields (repo, release_branch, ...) to every log event.

    Replaces whatever the previous run bound. Fields that are None are
    left out, so a snapshot run carries no repo.

    Example:
        bind_run_context(repo="myorg/api", release_branch="develop")
        logger.warning("merge_commit_not_found", pr_number=42)
        # -> {"repo": "myorg/api", "release_branch": "develop", "pr_number": 42, ...}
    """
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in fields.items() if value is not None}
    )


def get_logger(name: str) -> Any:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        A structlog bound logger
    """
    return structlog.get_logger(name)
