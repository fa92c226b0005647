# =============================================================================
# Resilink -- Outbound Queue
# =============================================================================
#
# Buffers outgoing frames while the socket is down and hands them back in
# the order they were sent once it is up again.  Survives transient
# reconnects; only a deliberate disconnect clears it.
# =============================================================================

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from ._logging import logger
from .types import Envelope


@dataclass
class QueuedMessage:
    """A frame waiting for the connection to come back."""

    envelope: Envelope
    enqueued_at: float = field(default_factory=time.monotonic)


class OutboundQueue:
    """FIFO buffer for frames that could not be sent yet.

    Args:
        max_size: Maximum number of buffered frames, ``None`` for no limit.
            When full, new frames are rejected rather than old ones dropped.
    """

    def __init__(self, *, max_size: int | None = None) -> None:
        self._max_size = max_size
        self._queue: deque[QueuedMessage] = deque()

    @property
    def size(self) -> int:
        return len(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    def enqueue(self, envelope: Envelope) -> bool:
        """Append a frame.  Returns False if the queue is full."""
        if self._max_size is not None and len(self._queue) >= self._max_size:
            logger.warning(
                "Outbound queue full (%d), dropping '%s'", self._max_size, envelope.type
            )
            return False
        self._queue.append(QueuedMessage(envelope))
        return True

    def peek(self) -> QueuedMessage | None:
        return self._queue[0] if self._queue else None

    def pop(self) -> QueuedMessage:
        """Remove and return the oldest frame.

        Raises:
            IndexError: If the queue is empty.
        """
        return self._queue.popleft()

    def clear(self) -> int:
        """Discard all frames.  Returns how many were dropped."""
        dropped = len(self._queue)
        self._queue.clear()
        return dropped

    def get_stats(self) -> dict[str, Any]:
        oldest = self._queue[0].enqueued_at if self._queue else None
        return {
            "size": len(self._queue),
            "capacity": self._max_size,
            "oldest_age_seconds": (
                time.monotonic() - oldest if oldest is not None else None
            ),
        }
