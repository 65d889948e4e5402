"""Base transport interface for durableflow job queues."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Iterable, Optional, Tuple, TypeVar

from ..contracts import JobMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for at-least-once job queues."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(
        self, topic: str, message: JobMessage, delay: Optional[float] = None
    ) -> None:
        """Send a message to a queue, optionally held back for ``delay`` seconds."""
        raise NotImplementedError

    @abc.abstractmethod
    async def poll(self, topic: str) -> Optional[Tuple[RawMessageT, JobMessage]]:
        """Take one deliverable message from ``topic`` without waiting."""
        raise NotImplementedError

    @abc.abstractmethod
    async def has_pending(self, topics: Iterable[str]) -> bool:
        """Whether any of ``topics`` holds ready or delayed messages."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, JobMessage]]:
        """Yield raw transport message and JobMessage pairs.

        Args:
            topic: The queue to consume
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)

    async def recover(self, topics: Iterable[str]) -> int:
        """Requeue deliveries that were never acked. Returns how many were moved."""
        return 0
