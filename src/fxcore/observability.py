"""Non-fatal observer: classify, record and contain component errors.

Batch jobs and event handlers wrap each unit of work with ErrorObserver so
that a failure is logged at the level its kind deserves and counted, but
never escalates to the caller that triggered the work. ValidationError is
the only kind that may be re-raised, and only when the caller asks for it.
"""

import asyncio
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any

from fxcore.exceptions import (
    FatalConfigError,
    IdempotencyConflict,
    StateConflict,
    SubscriptionExpired,
    TransientError,
    ValidationError,
)
from fxcore.logging import get_logger

logger = get_logger(__name__)


class ErrorKind(str, Enum):
    """Classification used for logging level and counters."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    IDEMPOTENCY = "idempotency"
    CONFLICT = "conflict"
    EXPIRED = "expired"
    FATAL_CONFIG = "fatal_config"
    UNEXPECTED = "unexpected"


_KIND_BY_TYPE: list[tuple[type[BaseException], ErrorKind]] = [
    (ValidationError, ErrorKind.VALIDATION),
    (TransientError, ErrorKind.TRANSIENT),
    (asyncio.TimeoutError, ErrorKind.TRANSIENT),
    (IdempotencyConflict, ErrorKind.IDEMPOTENCY),
    (StateConflict, ErrorKind.CONFLICT),
    (SubscriptionExpired, ErrorKind.EXPIRED),
    (FatalConfigError, ErrorKind.FATAL_CONFIG),
]


def classify(exc: BaseException) -> ErrorKind:
    """Map an exception to its ErrorKind."""
    for exc_type, kind in _KIND_BY_TYPE:
        if isinstance(exc, exc_type):
            return kind
    return ErrorKind.UNEXPECTED


class ErrorObserver:
    """Records classified errors to the log and to per-kind counters.

    Args:
        component: Name attached to every log line (e.g. "rate_alert_monitor").
    """

    def __init__(self, component: str) -> None:
        self._component = component
        self._counts: Counter[ErrorKind] = Counter()

    @property
    def counts(self) -> dict[str, int]:
        """Snapshot of error counts keyed by kind value."""
        return {kind.value: count for kind, count in self._counts.items()}

    def record(self, exc: BaseException, event: str, **context: Any) -> ErrorKind:
        """Classify exc, count it and log it. Returns the kind."""
        kind = classify(exc)
        self._counts[kind] += 1
        fields = {
            "component": self._component,
            "error_kind": kind.value,
            "error": str(exc) or type(exc).__name__,
            **context,
        }
        if kind is ErrorKind.IDEMPOTENCY:
            logger.debug(event, **fields)
        elif kind in (ErrorKind.TRANSIENT, ErrorKind.CONFLICT, ErrorKind.EXPIRED, ErrorKind.VALIDATION):
            logger.warning(event, **fields)
        elif kind is ErrorKind.FATAL_CONFIG:
            logger.critical(event, **fields)
        else:
            logger.error(event, exc_info=exc, **fields)
        return kind

    @contextmanager
    def guard(
        self,
        event: str,
        reraise_validation: bool = False,
        **context: Any,
    ) -> Iterator[None]:
        """Contain any exception raised in the block.

        CancelledError always propagates so shutdown is never swallowed.
        """
        try:
            yield
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            kind = self.record(exc, event, **context)
            if reraise_validation and kind is ErrorKind.VALIDATION:
                raise
