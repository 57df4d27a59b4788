"""Shared structlog configuration for the API process."""

from __future__ import annotations

import logging

import structlog

from lookscan.config import LOCAL_ENVIRONMENTS, Settings


def configure_logging(settings: Settings) -> None:
    """Console renderer for local runs, JSON lines everywhere else.

    The per-request ``request_id`` bound by the middleware is merged into
    every event.
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.environment in LOCAL_ENVIRONMENTS
        else structlog.processors.JSONRenderer()
    )
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
