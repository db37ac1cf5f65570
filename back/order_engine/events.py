"""
Realtime domain events.

The engine never talks to sockets itself. It hands `(room, event, payload)`
triples to an injected Broadcaster; delivery to screens is the job of whatever
subscribes on the other side (the websocket bridge).
"""

import json
import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

import redis

from .money import as_json
from .settings import settings

logger = logging.getLogger(__name__)


class Room(str, Enum):
    all = "all"
    pos = "pos"
    kitchen = "kitchen"
    supervisor = "supervisor"


class Event(str, Enum):
    order_created = "order:created"
    order_paid = "order:paid"
    order_cancelled = "order:cancelled"
    order_split = "order:split"
    order_partial_paid = "order:partial_paid"
    order_updated = "order:updated"
    order_item_updated = "order:item_updated"
    order_item_removed = "order:item_removed"
    kitchen_new_item = "kitchen:new_item"
    kitchen_batch_update = "kitchen:batch_update"
    kitchen_item_updated = "kitchen:item_updated"
    kitchen_item_cancelled = "kitchen:item_cancelled"
    kitchen_order_cancelled = "kitchen:order_cancelled"
    kitchen_status_changed = "kitchen:status_changed"
    kitchen_item_ready = "kitchen:item_ready"
    notification_sound = "play:notification_sound"
    table_closed = "table:closed"
    alert_discount = "alert:discount"


class Broadcaster(Protocol):
    def publish(self, room: Room, event: Event, payload: dict[str, Any]) -> None: ...


def json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return as_json(value)
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    raise TypeError(f"Cannot serialise {type(value).__name__}")


def encode_message(event: Event, payload: dict[str, Any]) -> str:
    return json.dumps({"event": event.value, "data": payload}, default=json_default)


class RedisBroadcaster:
    """Publish events to Redis pub/sub for the websocket bridge.

    Channel per room: `pos:{room}`. At-most-once; if Redis is unavailable the
    event is dropped and logged.
    """

    def __init__(self, redis_url: str | None = None, client: redis.Redis | None = None):
        self.redis_url = redis_url or settings.redis_url
        self._client = client

    def _get_client(self) -> redis.Redis | None:
        if self._client is None:
            try:
                client = redis.from_url(self.redis_url)
                client.ping()
            except redis.RedisError as e:
                logger.warning(f"Redis unavailable at {self.redis_url}: {e}")
                return None
            self._client = client
        return self._client

    def publish(self, room: Room, event: Event, payload: dict[str, Any]) -> None:
        client = self._get_client()
        if client is None:
            return
        try:
            client.publish(f"pos:{room.value}", encode_message(event, payload))
        except redis.RedisError as e:
            logger.warning(f"Failed to publish {event.value} to {room.value}: {e}")
