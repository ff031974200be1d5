from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.database import on_commit


logger = logging.getLogger("app.events")


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out to in-process subscribers.

    A failing subscriber is logged and skipped; the publisher's transaction has
    already committed by the time events go out.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                handler(event)
            except Exception:
                logger.exception("event.handler_failed", extra={"event_type": event_name})


event_bus = InProcessEventBus()
published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any], session: Session | None = None) -> None:
    """Release an event envelope, or hold it until ``session`` commits."""
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    if session is None:
        _release(envelope)
    else:
        on_commit(session, partial(_release, envelope))


def _release(envelope: dict[str, Any]) -> None:
    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
