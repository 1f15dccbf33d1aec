from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Hashable
from typing import Any

from .errors import TransportError

_LOGGER = logging.getLogger("extension_relay.pending")


class PendingMessageQueue:
    """FIFO of payloads waiting for a recipient channel to (re)appear."""

    def __init__(self) -> None:
        self._items: deque[dict[str, Any]] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def push(self, payload: dict[str, Any]) -> None:
        self._items.append(payload)

    def clear(self) -> None:
        self._items.clear()

    def flush(self, send: Callable[[dict[str, Any]], None]) -> int:
        """Send queued payloads in order; stop at the first TransportError.

        The failed payload and everything after it stay queued. Returns the
        number of payloads delivered.
        """
        sent = 0
        while self._items:
            try:
                send(self._items[0])
            except TransportError:
                _LOGGER.debug("flush stopped after %d message(s), %d still queued", sent, len(self._items))
                raise
            self._items.popleft()
            sent += 1
        return sent


class PendingQueues:
    """PendingMessageQueue per logical peer (tab id, direction name, ...)."""

    def __init__(self) -> None:
        self._queues: dict[Hashable, PendingMessageQueue] = {}

    def push(self, key: Hashable, payload: dict[str, Any]) -> None:
        self._queues.setdefault(key, PendingMessageQueue()).push(payload)

    def size(self, key: Hashable) -> int:
        q = self._queues.get(key)
        return len(q) if q is not None else 0

    def discard(self, key: Hashable) -> int:
        q = self._queues.pop(key, None)
        return len(q) if q is not None else 0

    def flush(self, key: Hashable, send: Callable[[dict[str, Any]], None]) -> int:
        q = self._queues.get(key)
        if q is None:
            return 0
        sent = q.flush(send)
        self._queues.pop(key, None)
        return sent

    def sizes(self) -> dict[str, int]:
        return {str(k): len(q) for k, q in self._queues.items() if len(q)}
