from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .services.stats import RuntimeStats
from .utils import utcnow

log = logging.getLogger("custodian.events")

WILDCARD = "*"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    payload: dict[str, Any]
    published_at: datetime = field(default_factory=utcnow)


EventHandler = Callable[[DomainEvent], Any]


class EventPublisher:
    """In-process broadcast of domain events.

    Subscribers register per event name, or under ``"*"`` for every event.
    Handlers may be plain callables or coroutines. A failing handler is
    logged and never affects the publisher or the other handlers.
    """

    def __init__(self, stats: Optional[RuntimeStats] = None) -> None:
        self._stats = stats
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, name: str, handler: EventHandler) -> None:
        self._handlers[name].append(handler)

    async def publish(self, name: str, **payload: Any) -> DomainEvent:
        event = DomainEvent(name=name, payload=payload)
        log.debug("publish %s %s", name, payload)
        if self._stats is not None:
            self._stats.events_published += 1

        for handler in [*self._handlers.get(name, []), *self._handlers.get(WILDCARD, [])]:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("Event handler %r failed for %s", handler, name)
        return event

    async def refresh_clients(self, account_ids: Iterable[int]) -> DomainEvent:
        """Ask the connected sessions of these accounts to reload."""
        return await self.publish("client_refresh", account_ids=sorted({int(a) for a in account_ids}))
