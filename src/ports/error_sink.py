"""Error sink port — host-provided observability for alert engine errors.

Core modules report runtime errors here instead of raising them out of
the tick loop.
"""

from __future__ import annotations

import logging
from typing import Protocol

from src.core.errors import AlertError, ConcurrentUpsertConflict, DispatchFailure

logger = logging.getLogger(__name__)


class ErrorSink(Protocol):
    """Abstract error reporting interface used by core modules."""

    def report(self, error: AlertError) -> None: ...


class LoggingErrorSink:
    """Default sink: writes every reported error to the log."""

    def report(self, error: AlertError) -> None:
        name = type(error).__name__
        if isinstance(error, ConcurrentUpsertConflict):
            logger.info("%s: %s", name, error)
        elif isinstance(error, DispatchFailure) and not error.final:
            logger.warning("%s (attempt %d): %s", name, error.attempts, error)
        else:
            logger.error("%s: %s", name, error)


class CollectingErrorSink:
    """Keeps reported errors in memory; handy for hosts that poll for health."""

    def __init__(self) -> None:
        self.errors: list[AlertError] = []

    def report(self, error: AlertError) -> None:
        self.errors.append(error)

    def of_type(self, error_type: type[AlertError]) -> list[AlertError]:
        return [e for e in self.errors if isinstance(e, error_type)]
