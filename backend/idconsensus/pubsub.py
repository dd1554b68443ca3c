from __future__ import annotations

import json
import os
from contextlib import suppress
from datetime import datetime
from typing import Any, AsyncIterator, Iterable

import redis.asyncio as redis

from . import models
from .eventlog import event_envelope

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
_redis = None

async def get_redis():
    global _redis
    if _redis is None:
        if os.getenv("TESTING") == "1":
            from fakeredis import aioredis
            _redis = aioredis.FakeRedis()
        else:
            _redis = redis.from_url(REDIS_URL)
    return _redis


def _json_default(value: Any) -> Any:
    # purpose: convert datetime objects to ISO strings for event payloads
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def serialize_event(event: dict[str, Any]) -> str:
    return json.dumps(event, default=_json_default)


def observation_channel(observation_id: int) -> str:
    return f"observation:{observation_id}"


def taxon_change_channel(taxon_change_id: int) -> str:
    return f"taxon_change:{taxon_change_id}"


async def publish_events(events: Iterable[models.ObservationEvent]) -> int:
    """Broadcast persisted events to their observation or taxon change channel."""

    # purpose: fan committed engine events out to search, stats and notification listeners
    r = await get_redis()
    published = 0
    for event in events:
        if event.observation_id is not None:
            channel = observation_channel(event.observation_id)
        elif event.taxon_change_id is not None:
            channel = taxon_change_channel(event.taxon_change_id)
        else:
            continue
        await r.publish(channel, serialize_event(event_envelope(event)))
        published += 1
    return published


async def iter_observation_events(observation_id: int) -> AsyncIterator[str]:
    """Yield observation pub/sub messages as a stream."""

    r = await get_redis()
    channel = observation_channel(observation_id)
    pubsub = r.pubsub()
    await pubsub.subscribe(channel)
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                yield data.decode()
            else:
                yield str(data)
    finally:
        with suppress(Exception):
            await pubsub.unsubscribe(channel)
        with suppress(AttributeError):
            await pubsub.close()
