"""
MODULE OVERVIEW:
The in-process event bus the chat session uses to fan inbound events out to
its listeners.

WHAT IS HAPPENING HERE:
Each topic ("message", "typing", "presence", ...) holds a list of handlers, so
any number of consumers can listen to the same topic without replacing one
another. Handlers may be plain functions or coroutines. A failing handler is
logged and skipped; it never stops delivery to the remaining handlers.
"""
import inspect
from collections import defaultdict
from typing import Any, Callable

from loguru import logger

Handler = Callable[..., Any]


class EventBus:
    def __init__(self):
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register `handler` for `topic` and return a callable that removes it again."""
        self._subscribers[topic].append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(topic, handler)

        return unsubscribe

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._subscribers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def clear(self) -> None:
        self._subscribers.clear()

    async def publish(self, topic: str, *args: Any) -> None:
        # Iterate over a copy so handlers may unsubscribe themselves mid-publish
        for handler in list(self._subscribers.get(topic, ())):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"topic={topic} event=handler_error reason='{e}'")
