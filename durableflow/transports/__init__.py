"""Queue transports and the factory that builds one from configuration."""

from __future__ import annotations

from typing import Optional

from ..config import TransportConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(settings: Optional[TransportConfig] = None) -> BaseTransport:
    """Build the transport described by ``settings``.

    Defaults to the ``transport`` section of the loaded configuration.
    """
    settings = settings or load_config().transport
    if settings.backend == "redis":
        from .redis import RedisTransport

        return RedisTransport(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
            password=settings.redis.password,
            prefix=settings.prefix,
        )
    return InMemoryTransport(poll_interval=settings.poll_interval)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
