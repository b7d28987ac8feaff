"""Multi-subscriber broadcast of connection status events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from leafctl.core.model import ConnectionStatus, StatusEvent

StatusCallback = Callable[[StatusEvent], None]
LOGGER = logging.getLogger(__name__)


class StatusBroadcaster:
    """Fan-out of status events to independently attached subscribers.

    A subscriber that raises is logged and stays subscribed; it never keeps
    the others from seeing the event.
    """

    def __init__(self, initial: StatusEvent | None = None) -> None:
        self._current = initial or StatusEvent(ConnectionStatus.DISCONNECTED)
        self._subscribers: list[StatusCallback] = []

    @property
    def current(self) -> StatusEvent:
        return self._current

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: StatusEvent) -> None:
        self._current = event
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                LOGGER.exception("Status subscriber %r failed on %s", callback, event)

    async def listen(self) -> AsyncIterator[StatusEvent]:
        """Yield every event published after the iteration starts."""
        queue: asyncio.Queue[StatusEvent] = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
