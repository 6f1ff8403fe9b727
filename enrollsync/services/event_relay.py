"""Forward committed domain events to Redis pub/sub.

Architecture:
    Orchestrator → EventBus → RedisEventRelay → PUBLISH enrollment-events → consumers

External real-time-sync consumers (websocket gateways, dashboards, cache
invalidators in other services) subscribe to the channel.  Pub/sub is
fire-and-forget: a consumer that is not connected at publish time misses
the event, which matches the bus's own at-most-once guarantee.

The relay is an ordinary "*" subscriber.  A failed PUBLISH raises out of
the handler and is logged and counted by the bus like any other handler
failure; the operation that produced the event is unaffected.
"""

from __future__ import annotations

import json
import logging

import redis.asyncio as aioredis

from enrollsync.models.events import DomainEvent
from enrollsync.services.events import ALL_EVENTS, EventBus

logger = logging.getLogger(__name__)


class RedisEventRelay:
    def __init__(self, redis: aioredis.Redis, channel: str) -> None:  # type: ignore[type-arg]
        self._redis = redis
        self._channel = channel
        self._bus: EventBus | None = None
        self.events_forwarded = 0

    @property
    def is_attached(self) -> bool:
        return self._bus is not None

    def attach(self, bus: EventBus) -> None:
        if self._bus is not None:
            logger.warning("Event relay already attached")
            return
        bus.subscribe(ALL_EVENTS, self.publish)
        self._bus = bus
        logger.info("Event relay publishing to channel=%s", self._channel)

    def detach(self) -> None:
        if self._bus is None:
            return
        self._bus.unsubscribe(ALL_EVENTS, self.publish)
        self._bus = None

    async def publish(self, event: DomainEvent) -> None:
        payload = json.dumps(event.to_dict())
        receivers = await self._redis.publish(self._channel, payload)
        self.events_forwarded += 1
        logger.debug(
            "Relayed event_type=%s entity_id=%s receivers=%s",
            event.type.value,
            event.entity_id,
            receivers,
        )
