"""Logging setup for the client components and the CLI.

Every module logs through ``get_logger(__name__)``, so all records live under
the ``ollastream`` namespace and can be tuned with one logger level. Library
code never configures handlers; only :func:`configure_logging` does, and the
CLI calls it once at start-up. Retry waits, cache hits and stream statistics
are logged at DEBUG; recoverable failures (a failed probe, a stalled stream)
at WARNING.
"""

from __future__ import annotations

import logging
from typing import Optional

from rich.logging import RichHandler

from .console import console

ROOT_LOGGER = "ollastream"

# Transport libraries that log each pooled connection at DEBUG.
_NOISY_LOGGERS = ("urllib3", "requests")


def configure_logging(level: str = "INFO") -> None:
    """Route client diagnostics through a Rich handler on the shared console.

    Unknown level names fall back to INFO. At DEBUG, tracebacks are rendered
    by Rich as well.
    """

    resolved = getattr(logging, str(level).upper(), logging.INFO)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    handler = RichHandler(
        console=console,
        rich_tracebacks=resolved <= logging.DEBUG,
        markup=False,
        show_path=False,
    )
    logging.basicConfig(level=resolved, format="%(message)s", handlers=[handler], force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return ``name`` as a logger, or the package root logger when omitted."""

    return logging.getLogger(name or ROOT_LOGGER)
