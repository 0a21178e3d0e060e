from __future__ import annotations

import json
import logging
import os
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import redis.asyncio as redis
from redis.exceptions import RedisError

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
_redis = None

logger = logging.getLogger(__name__)

ORDERS_TABLE = "orders"
CHANGE_EVENTS = ("INSERT", "UPDATE", "DELETE")


async def get_redis():
    global _redis
    if _redis is None:
        if os.getenv("TESTING") == "1":
            from fakeredis import aioredis
            _redis = aioredis.FakeRedis()
        else:
            _redis = redis.from_url(REDIS_URL)
    return _redis


def table_channel(table: str) -> str:
    return f"table:{table}"


def _json_default(value: Any) -> Any:
    # purpose: convert datetime objects to ISO strings for event payloads
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _serialize_event(event: dict[str, Any]) -> str:
    return json.dumps(event, default=_json_default)


async def publish_table_change(table: str, event_type: str, record_id: int | None) -> None:
    """Announce that a row of ``table`` changed.

    The message only says *that* something changed; subscribers refetch
    instead of trusting the payload. A broken broker is logged and never
    fails the write that triggered the notification.
    """

    if event_type not in CHANGE_EVENTS:
        raise ValueError(f"Unsupported change event: {event_type}")
    event = {
        "table": table,
        "type": event_type,
        "id": record_id,
        "commit_timestamp": datetime.now(timezone.utc),
    }
    try:
        r = await get_redis()
        await r.publish(table_channel(table), _serialize_event(event))
    except (RedisError, OSError):
        logger.warning("Could not publish %s change for %s %s", event_type, table, record_id, exc_info=True)


async def publish_order_change(event_type: str, order_id: int | None) -> None:
    await publish_table_change(ORDERS_TABLE, event_type, order_id)


class ChangeSubscription:
    """Subscription to the change feed of one table.

    The channel is subscribed on entry, so no change published after
    ``__aenter__`` returns can be missed, and released on exit.
    """

    def __init__(self, table: str) -> None:
        self.table = table
        self.channel = table_channel(table)
        self._listener = None

    async def open(self) -> "ChangeSubscription":
        r = await get_redis()
        self._listener = r.pubsub()
        await self._listener.subscribe(self.channel)
        return self

    async def close(self) -> None:
        listener, self._listener = self._listener, None
        if listener is None:
            return
        with suppress(Exception):
            await listener.unsubscribe(self.channel)
        with suppress(AttributeError):
            await listener.aclose()

    async def __aenter__(self) -> "ChangeSubscription":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __aiter__(self) -> AsyncIterator[str]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[str]:
        if self._listener is None:
            raise RuntimeError("Subscription is not open")
        async for message in self._listener.listen():
            if message.get("type") != "message":
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                yield data.decode()
            else:
                yield str(data)


def subscribe_order_changes() -> ChangeSubscription:
    return ChangeSubscription(ORDERS_TABLE)
