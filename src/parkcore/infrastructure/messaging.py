# File: src/parkcore/infrastructure/messaging.py
"""
In-process event bus for domain events

The coordinator publishes check-in and checkout events after the unit of
work commits. Handlers run synchronously; a failing handler is logged and
never undoes the operation that raised the event.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Union
import logging

from ..domain.models import DomainEvent


class EventHandler(ABC):
    """Base class for event handlers"""

    def can_handle(self, event: DomainEvent) -> bool:
        return True

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        pass


HandlerLike = Union[EventHandler, Callable[[DomainEvent], None]]

ALL_EVENTS = "*"


class EventBus:
    """
    In-memory event bus for intra-process event publishing

    Subscribers register for an event type name (the event class name) or
    for ALL_EVENTS.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[HandlerLike]] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: Union[str, type], handler: HandlerLike) -> None:
        """Subscribe to events of a specific type"""
        key = event_type if isinstance(event_type, str) else event_type.__name__
        handlers = self._subscribers.setdefault(key, [])
        if handler not in handlers:
            handlers.append(handler)
            self._logger.debug(f"Subscribed {self._name(handler)} to {key}")

    def unsubscribe(self, event_type: Union[str, type], handler: HandlerLike) -> None:
        key = event_type if isinstance(event_type, str) else event_type.__name__
        if handler in self._subscribers.get(key, []):
            self._subscribers[key].remove(handler)
            self._logger.debug(f"Unsubscribed {self._name(handler)} from {key}")

    def publish(self, event: DomainEvent) -> int:
        """Deliver an event; returns how many handlers succeeded"""
        self._logger.info(f"Publishing event: {event.event_type} (ID: {event.event_id})")
        handlers = self._subscribers.get(event.event_type, []) + self._subscribers.get(ALL_EVENTS, [])

        delivered = 0
        for handler in handlers:
            try:
                if isinstance(handler, EventHandler):
                    if not handler.can_handle(event):
                        continue
                    handler.handle(event)
                else:
                    handler(event)
                delivered += 1
            except Exception as e:
                self._logger.error(
                    f"Error handling event {event.event_type} with {self._name(handler)}: {e}",
                    exc_info=True,
                )
        return delivered

    def publish_all(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    @staticmethod
    def _name(handler: HandlerLike) -> str:
        return getattr(handler, "__name__", handler.__class__.__name__)


class EventRecorder(EventHandler):
    """Keeps every event it receives, for audits and tests"""

    def __init__(self):
        self.events: List[DomainEvent] = []

    def handle(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> List[DomainEvent]:
        return [e for e in self.events if isinstance(e, event_type)]
