"""Bounded history of recent broadcasts for backfilling late joiners."""

import logging
import threading
from collections import deque
from typing import Deque, List

from .envelope import BroadcastEnvelope

logger = logging.getLogger(__name__)

DEFAULT_MAX_QUEUE_SIZE = 100
DEFAULT_REPLAY_COUNT = 5


class ReplayBuffer:
    """FIFO ring of envelopes; the oldest entry is evicted at capacity.

    Thread-safe: pushes happen on the hub loop, length is read by status
    callers on other threads.
    """

    def __init__(self, max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE) -> None:
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")
        self.max_queue_size = max_queue_size
        self._lock = threading.Lock()
        self._entries: Deque[BroadcastEnvelope] = deque(maxlen=max_queue_size)
        self._total_evicted = 0

    def push(self, envelope: BroadcastEnvelope) -> None:
        with self._lock:
            if len(self._entries) == self.max_queue_size:
                self._total_evicted += 1
            self._entries.append(envelope)

    def recent(self, n: int = DEFAULT_REPLAY_COUNT) -> List[BroadcastEnvelope]:
        """Last ``n`` entries, oldest first, each tagged as a replay."""
        if n <= 0:
            return []
        with self._lock:
            tail = list(self._entries)[-n:]
        return [envelope.as_replay() for envelope in tail]

    def entries(self) -> List[BroadcastEnvelope]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def total_evicted(self) -> int:
        with self._lock:
            return self._total_evicted

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
