"""In-memory transport for testing and single-process deployments."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Iterable, List, Optional, Tuple

from ..contracts import JobMessage
from .base import BaseTransport

# (topic, serialized message)
RawMessage = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue. Delays are honoured; nack requeues."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawMessage]] = defaultdict(deque)
        self._delayed: Dict[str, List[Tuple[float, int, RawMessage]]] = defaultdict(list)
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()

    def _promote(self, topic: str) -> None:
        delayed = self._delayed[topic]
        now = self._now()
        while delayed and delayed[0][0] <= now:
            _, _, raw = heapq.heappop(delayed)
            self._queues[topic].append(raw)

    async def publish(
        self, topic: str, message: JobMessage, delay: Optional[float] = None
    ) -> None:
        """Publish message to in-memory queue."""
        raw = (topic, message.to_json())
        async with self._lock:
            if delay and delay > 0:
                heapq.heappush(
                    self._delayed[topic], (self._now() + delay, next(self._sequence), raw)
                )
            else:
                self._queues[topic].append(raw)

    async def poll(self, topic: str) -> Optional[Tuple[RawMessage, JobMessage]]:
        async with self._lock:
            self._promote(topic)
            if not self._queues[topic]:
                return None
            raw = self._queues[topic].popleft()
        return raw, JobMessage.from_json(raw[1])

    async def has_pending(self, topics: Iterable[str]) -> bool:
        async with self._lock:
            return any(self._queues[t] or self._delayed[t] for t in topics)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, JobMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        start_time = self._now() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if self._now() - start_time >= lifespan:
                    break

            item = await self.poll(topic)
            if item is not None:
                yield item
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append(raw_message)
