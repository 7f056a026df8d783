from __future__ import annotations

import itertools
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]


class Subscription:
    """Handle returned by every watch/on call. Cancelling twice is a no-op."""

    __slots__ = ("_dispose",)

    def __init__(self, dispose: Callable[[], None] | None = None) -> None:
        self._dispose = dispose

    @property
    def active(self) -> bool:
        return self._dispose is not None

    def cancel(self) -> bool:
        dispose, self._dispose = self._dispose, None
        if dispose is None:
            return False
        dispose()
        return True

    def __call__(self) -> None:
        self.cancel()


class EventEmitter:
    def __init__(self) -> None:
        self._handlers: dict[str, dict[int, EventHandler]] = {}
        self._ids = itertools.count(1)

    def on(self, event: str, handler: EventHandler) -> Subscription:
        handler_id = next(self._ids)
        self._handlers.setdefault(event, {})[handler_id] = handler

        def dispose() -> None:
            handlers = self._handlers.get(event)
            if handlers is None:
                return
            handlers.pop(handler_id, None)
            if not handlers:
                self._handlers.pop(event, None)

        return Subscription(dispose)

    def emit(self, event: str, payload: Any = None) -> int:
        handlers = list(self._handlers.get(event, {}).values())
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("Event handler failed for %s", event)
        return len(handlers)
