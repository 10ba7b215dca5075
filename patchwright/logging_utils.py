"""
Logging helpers for patchwright.

The CLI turns its ``-v`` count into a level for the ``patchwright``
logger hierarchy, and can mirror applier progress events into the log.
"""

from __future__ import annotations

import logging
from typing import Optional, TextIO

from .events import Event, EventKind

PACKAGE_LOGGER = "patchwright"
LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

_PROGRESS_LOG = logging.getLogger(PACKAGE_LOGGER + ".progress")

_FAILURE_EVENTS = frozenset({EventKind.ERROR, EventKind.ROLLBACK_FAILED})
_DETAIL_EVENTS = frozenset(
    {
        EventKind.FILE_APPLYING,
        EventKind.FILE_APPLIED,
        EventKind.COMMAND_START,
        EventKind.MIGRATION_START,
    }
)


def level_for_verbosity(verbosity: int) -> int:
    """
    verbosity == 0 -> WARNING
    verbosity == 1 -> INFO
    verbosity >= 2 -> DEBUG
    """

    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def configure_logging(verbosity: int, stream: Optional[TextIO] = None) -> None:
    """
    Configure the root handler and the patchwright level from a verbosity
    count. `stream` defaults to stderr.

    The package logger level is set directly as well, so a later call with
    a different verbosity still takes effect once the root logger already
    has a handler.
    """

    level = level_for_verbosity(verbosity)
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=stream)
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)


def log_progress(event: Event) -> None:
    """Event subscriber that writes applier progress to the log."""

    if event.kind in _FAILURE_EVENTS:
        level = logging.ERROR
    elif event.kind in _DETAIL_EVENTS:
        level = logging.DEBUG
    else:
        level = logging.INFO

    if event.data:
        details = " ".join(f"{key}={value}" for key, value in sorted(event.data.items()))
        _PROGRESS_LOG.log(level, "%s %s", event.kind.value, details)
    else:
        _PROGRESS_LOG.log(level, "%s", event.kind.value)
