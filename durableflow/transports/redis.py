"""Redis transport for cross-process job queues."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Iterable, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import JobMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

# (topic, serialized message)
RawMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawMessage]):
    """Redis-based transport.

    Ready jobs live in a list per queue; delayed jobs wait in a sorted set
    scored by their due time and are moved to the list once due. A delivered
    job is moved atomically into the queue's processing list and stays there
    until it is acked, so a worker that dies mid-job does not lose it.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "durableflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    def _delayed(self, topic: str) -> str:
        return f"{self.prefix}:{topic}:delayed"

    def _processing(self, topic: str) -> str:
        return f"{self.prefix}:{topic}:processing"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def publish(
        self, topic: str, message: JobMessage, delay: Optional[float] = None
    ) -> None:
        """Publish message to Redis list (acting as queue)."""
        client = await self._client()
        message_json = message.to_json()
        if delay and delay > 0:
            await client.zadd(self._delayed(topic), {message_json: time.time() + delay})
        else:
            await client.lpush(self._queue(topic), message_json)

    async def _promote(self, topic: str) -> None:
        client = await self._client()
        due = await client.zrangebyscore(self._delayed(topic), 0, time.time())
        for message_json in due:
            # zrem decides which consumer moves the job
            if await client.zrem(self._delayed(topic), message_json):
                await client.lpush(self._queue(topic), message_json)

    async def _claimed(
        self, topic: str, message_json: str
    ) -> Optional[Tuple[RawMessage, JobMessage]]:
        try:
            return (topic, message_json), JobMessage.from_json(message_json)
        except ValidationError as e:
            logger.error(f"Failed to parse message on {topic}: {e}")
            client = await self._client()
            await client.lrem(self._processing(topic), 1, message_json)
            return None

    async def poll(self, topic: str) -> Optional[Tuple[RawMessage, JobMessage]]:
        client = await self._client()
        await self._promote(topic)
        message_json = await client.lmove(
            self._queue(topic), self._processing(topic), src="RIGHT", dest="LEFT"
        )
        if message_json is None:
            return None
        return await self._claimed(topic, message_json)

    async def has_pending(self, topics: Iterable[str]) -> bool:
        client = await self._client()
        for topic in topics:
            if await client.llen(self._queue(topic)) or await client.zcard(self._delayed(topic)):
                return True
        return False

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, JobMessage]]:
        """Subscribe to messages from Redis queue."""
        client = await self._client()
        start_time = asyncio.get_running_loop().time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                elapsed = asyncio.get_running_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            await self._promote(topic)
            # Blocking move into the processing list, with timeout
            message_json = await client.blmove(
                self._queue(topic), self._processing(topic), 1, src="RIGHT", dest="LEFT"
            )
            if message_json is not None:
                item = await self._claimed(topic, message_json)
                if item is not None:
                    yield item
                continue

            # Brief sleep to prevent busy waiting when no messages
            await asyncio.sleep(0.01)

    async def ack(self, raw_message: RawMessage) -> None:
        topic, message_json = raw_message
        client = await self._client()
        await client.lrem(self._processing(topic), 1, message_json)

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        topic, message_json = raw_message
        client = await self._client()
        removed = await client.lrem(self._processing(topic), 1, message_json)
        if requeue and removed:
            await client.lpush(self._queue(topic), message_json)

    async def recover(self, topics: Iterable[str]) -> int:
        """Move jobs left in the processing lists back onto their queues.

        Call before consuming: any job still in a processing list belonged to a
        worker that stopped before acking it. Jobs of a worker that is still
        running are delivered twice.
        """
        client = await self._client()
        moved = 0
        for topic in topics:
            while await client.lmove(
                self._processing(topic), self._queue(topic), src="RIGHT", dest="RIGHT"
            ):
                moved += 1
        if moved:
            logger.warning(f"Requeued {moved} unacknowledged job(s)")
        return moved
