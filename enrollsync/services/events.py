"""In-process event bus for committed domain events.

The orchestrator emits a DomainEvent after each successful commit;
subscribers (the Redis relay, audit hooks, tests) react to it.  The bus
is constructed explicitly and passed to whoever needs it; there is no
module-level instance.

Delivery guarantees are deliberately weak:
- in-process only, no persistence or replay
- at-most-once; an event with no subscribers is dropped
- synchronous with respect to the emitter: emit() awaits every handler
  in subscription order before returning

emit() never raises.  A failing handler is logged and counted, and the
remaining handlers still run, so a broken subscriber can never undo or
fail an operation that already committed.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable

from enrollsync.core.metrics import EVENT_HANDLER_FAILURES, EVENTS_EMITTED
from enrollsync.models.events import DomainEvent, EventType

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

EventHandler = Callable[[DomainEvent], Awaitable[None] | None]


class EventBus:
    def __init__(self) -> None:
        # One list keeps subscription order across exact and "*" subscribers.
        self._subscriptions: list[tuple[str, EventHandler]] = []

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        """Register handler for one event type, or for every event with "*"."""
        self._subscriptions.append((_type_name(event_type), handler))
        logger.debug("Subscribed handler to: %s", _type_name(event_type))

    def unsubscribe(self, event_type: EventType | str, handler: EventHandler) -> bool:
        entry = (_type_name(event_type), handler)
        try:
            self._subscriptions.remove(entry)
        except ValueError:
            return False
        return True

    def handler_count(self, event_type: EventType | str | None = None) -> int:
        if event_type is None:
            return len(self._subscriptions)
        name = _type_name(event_type)
        return sum(1 for subscribed, _ in self._subscriptions if subscribed in (name, ALL_EVENTS))

    async def emit(self, event: DomainEvent) -> int:
        """Deliver event to matching handlers.  Returns how many succeeded."""
        name = event.type.value
        EVENTS_EMITTED.labels(event_type=name).inc()
        handlers = [h for subscribed, h in self._subscriptions if subscribed in (name, ALL_EVENTS)]
        if not handlers:
            logger.debug("No subscribers for event_type=%s, dropped", name)
            return 0

        delivered = 0
        for handler in handlers:
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
                delivered += 1
            except Exception:
                EVENT_HANDLER_FAILURES.labels(event_type=name).inc()
                logger.exception(
                    "Event handler %s failed event_type=%s entity_id=%s",
                    getattr(handler, "__qualname__", repr(handler)),
                    name,
                    event.entity_id,
                    extra={"event_type": name},
                )
        return delivered


def _type_name(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type
