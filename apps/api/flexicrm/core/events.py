from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


def _pattern_matches(pattern: str, event_name: str) -> bool:
    if pattern == "*" or pattern == event_name:
        return True
    if pattern.endswith(".*"):
        return event_name.startswith(pattern[:-1])
    return False


class InProcessEventBus:
    """Synchronous fan-out of domain events to handlers registered at startup.

    A subscription names an exact event type, a dotted prefix such as ``crm.*``, or ``*``.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[pattern]:
            self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    def _matching_handlers(self, event_name: str) -> list[EventHandler]:
        matched: list[EventHandler] = []
        for pattern, handlers in self._subscribers.items():
            if _pattern_matches(pattern, event_name):
                matched.extend(handler for handler in handlers if handler not in matched)
        return matched

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self._matching_handlers(event_name):
            handler(event)


event_bus = InProcessEventBus()
