"""Redis pub/sub mirror for room broadcasts.

Each process publishes room envelopes on ``ws-topic:<room key>`` tagged with
its ``origin`` instance id and re-broadcasts envelopes published by other
processes to its own local connections.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from ..core.config import settings
from ..services.redis_client import get_redis
from ..utils.metrics import incr as metrics_incr

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "ws-topic:"


def bus_enabled() -> bool:
    return bool(settings.WS_BUS_ENABLED) and get_redis() is not None


async def publish_topic(topic: str, envelope: dict[str, Any]) -> None:
    """Publish an envelope to ws-topic:<topic>.

    Safe to call even when the bus is disabled; becomes a no-op. Publish
    failures are logged and counted, never raised to the broadcaster.
    """
    if not bus_enabled():
        return
    env = dict(envelope)
    env.setdefault("v", 1)
    env.setdefault("topic", topic)
    env["origin"] = settings.INSTANCE_ID
    data = json.dumps(env, separators=(",", ":"), default=str)
    try:
        await get_redis().publish(f"{CHANNEL_PREFIX}{topic}", data)
    except (RedisError, OSError) as exc:
        metrics_incr("ws.bus.publish_fail")
        logger.warning("ws.bus.publish_fail", extra={"topic": topic, "error": str(exc)})


_consumer_task: Optional[asyncio.Task] = None


def _decode(data: Any) -> Optional[dict[str, Any]]:
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    if not isinstance(data, str):
        return None
    try:
        obj = json.loads(data)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


async def start_pattern_consumer(
    handler: Callable[[str, dict[str, Any]], Awaitable[None]],
    pattern: str = f"{CHANNEL_PREFIX}*",
) -> Optional[asyncio.Task]:
    """Start a background task that PSUBSCRIBEs to ``pattern``.

    ``handler`` receives (topic without prefix, envelope dict) for every
    envelope that did not originate in this process.
    """
    global _consumer_task
    if not bus_enabled():
        return None
    if _consumer_task is not None and not _consumer_task.done():
        return _consumer_task

    pubsub = get_redis().pubsub()
    await pubsub.psubscribe(pattern)

    async def _loop() -> None:
        try:
            async for msg in pubsub.listen():
                if not isinstance(msg, dict) or msg.get("type") != "pmessage":
                    continue
                payload = _decode(msg.get("data"))
                if payload is None:
                    continue
                if payload.get("origin") == settings.INSTANCE_ID:
                    continue
                channel = msg.get("channel")
                if isinstance(channel, (bytes, bytearray)):
                    channel = channel.decode("utf-8")
                topic = str(channel)[len(CHANNEL_PREFIX):]
                try:
                    await handler(topic, payload)
                except Exception:
                    # Keep the stream alive; a bad envelope must not stop fan-out
                    logger.exception("ws.bus.dispatch_fail", extra={"topic": topic})
        finally:
            await pubsub.aclose()

    _consumer_task = asyncio.create_task(_loop())
    logger.info("ws.bus.started", extra={"instance_id": settings.INSTANCE_ID})
    return _consumer_task


async def stop_pattern_consumer() -> None:
    global _consumer_task
    task = _consumer_task
    _consumer_task = None
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


__all__ = [
    "bus_enabled",
    "publish_topic",
    "start_pattern_consumer",
    "stop_pattern_consumer",
]
