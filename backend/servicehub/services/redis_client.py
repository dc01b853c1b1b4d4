from typing import Any, Optional

from redis import asyncio as aioredis

from servicehub.core.config import settings

_client: Optional[Any] = None


def _build_client() -> Any:
    url = (settings.REDIS_URL or "").strip()
    if not url.lower().startswith(("redis://", "rediss://")):
        return None
    return aioredis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=5,
        health_check_interval=30,
        retry_on_timeout=True,
    )


def get_redis() -> Optional[Any]:
    """Return the shared async client, building it on first use."""
    global _client
    if _client is None:
        _client = _build_client()
    return _client


def set_redis(client: Optional[Any]) -> None:
    """Swap the shared client (tests install ``fakeredis.aioredis.FakeRedis``)."""
    global _client
    _client = client


__all__ = ["get_redis", "set_redis"]
