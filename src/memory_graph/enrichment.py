from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Awaitable, Callable

from .schemas import EnrichmentItem, EnrichmentResult

logger = logging.getLogger(__name__)

Enricher = Callable[[EnrichmentItem], Awaitable[EnrichmentResult]]


class EnrichmentQueue:
    """Bounded FIFO of exchanges waiting for LLM extraction.

    Full queues drop new items instead of growing; the fast-path graph is
    already written, enrichment only refines it.
    """

    def __init__(self, maxsize: int = 50):
        self.maxsize = maxsize
        self._items: deque[EnrichmentItem] = deque()
        self._lock = threading.Lock()
        self.dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def put(self, item: EnrichmentItem) -> bool:
        with self._lock:
            if len(self._items) >= self.maxsize:
                self.dropped += 1
                logger.debug("Enrichment queue full, dropping %s", item.exchange_id)
                return False
            self._items.append(item)
            return True

    def take(self, n: int) -> list[EnrichmentItem]:
        with self._lock:
            batch = []
            while self._items and len(batch) < n:
                batch.append(self._items.popleft())
            return batch
