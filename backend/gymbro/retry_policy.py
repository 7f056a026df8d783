from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .config import settings
from .room_errors import RoomError, Transient
from .room_utils import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]

PERMANENT_CODES = frozenset({"permission-denied", "invalid-argument", "not-found", "already-exists"})
PERMANENT_MESSAGE_MARKERS = ("already", "not found")


def is_permanent_error(exc: BaseException) -> bool:
    if isinstance(exc, Transient):
        return False
    if isinstance(exc, RoomError):
        return True
    if getattr(exc, "code", None) in PERMANENT_CODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in PERMANENT_MESSAGE_MARKERS)


class RetryPolicy:
    """Bounded exponential backoff for store operations.

    The delay before attempt ``n`` (``n >= 2``) is
    ``min(base_delay_ms * 2 ** (n - 2), max_delay_ms)``. Permanent errors are
    raised on the attempt that produced them.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.max_attempts = max(1, max_attempts or settings.room_retry_max_attempts)
        self.base_delay_ms = max(0, base_delay_ms if base_delay_ms is not None else settings.room_retry_base_delay_ms)
        self.max_delay_ms = max(
            self.base_delay_ms,
            max_delay_ms if max_delay_ms is not None else settings.room_retry_max_delay_ms,
        )
        self._sleep = sleep or asyncio.sleep

    def delay_before_attempt(self, attempt: int) -> int:
        if attempt < 2:
            return 0
        return min(self.base_delay_ms * 2 ** (attempt - 2), self.max_delay_ms)

    async def run(self, operation: Callable[[], Awaitable[T]], name: str = "operation") -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if is_permanent_error(exc):
                    raise
                error = str(exc) or type(exc).__name__
                if attempt >= self.max_attempts:
                    log_event(
                        logger,
                        "retry_exhausted",
                        logging.WARNING,
                        operation=name,
                        attempts=self.max_attempts,
                        error=error,
                    )
                    raise
                delay_ms = self.delay_before_attempt(attempt + 1)
                log_event(
                    logger,
                    "retry",
                    logging.WARNING,
                    operation=name,
                    attempt=attempt,
                    delayMs=delay_ms,
                    error=error,
                )
            attempt += 1
            await self._sleep(delay_ms / 1000)
