"""
Event bus for the tag client.

In-memory typed pub/sub. Subscribers register against an event class and
receive every published instance of exactly that class. Plain callables
are invoked synchronously during publish() so ordering is deterministic;
coroutine functions are scheduled as tracked tasks on the running loop.
"""

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any, TypeVar

from ..structured_logging.enhanced_logging_config import get_logger
from .event_types import BaseEvent

T = TypeVar("T", bound=BaseEvent)

logger = get_logger(__name__)

Unsubscribe = Callable[[], bool]


class EventBus:
    """
    Typed publish/subscribe for client notifications.

    subscribe() returns a handle that removes the subscription when called,
    so owners can tear down exactly what they registered.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type[BaseEvent], list[Callable[[Any], Any]]] = defaultdict(list)
        self._active_tasks: set[asyncio.Task] = set()
        self._sequence = 0

    def publish(self, event: BaseEvent) -> None:
        """
        Deliver an event to every subscriber of its type.

        Subscriber exceptions are logged and never propagate to the publisher.

        Args:
            event: The event to publish
        """
        if not isinstance(event, BaseEvent):
            raise ValueError("Event must inherit from BaseEvent")

        self._sequence += 1
        event.sequence_number = self._sequence

        subscribers = list(self._subscribers.get(type(event), []))
        if not subscribers:
            return

        logger.debug("Publishing event", event_type=event.event_type, subscriber_count=len(subscribers))

        for subscriber in subscribers:
            subscriber_name = getattr(subscriber, "__name__", "unknown")
            if inspect.iscoroutinefunction(subscriber):
                self._schedule(subscriber, event, subscriber_name)
                continue
            try:
                subscriber(event)
            except Exception as e:  # pylint: disable=broad-exception-caught  # Reason: one failing subscriber must not break delivery to the rest
                logger.error(
                    "Error in sync event subscriber",
                    subscriber_name=subscriber_name,
                    event_type=event.event_type,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def _schedule(self, subscriber: Callable[[Any], Any], event: BaseEvent, subscriber_name: str) -> None:
        """Run a coroutine subscriber as a tracked task."""
        try:
            task = asyncio.get_running_loop().create_task(subscriber(event))
        except RuntimeError:
            logger.warning(
                "No running event loop for async subscriber, event not delivered",
                subscriber_name=subscriber_name,
                event_type=event.event_type,
            )
            return

        self._active_tasks.add(task)

        def _on_done(t: asyncio.Task, sn: str = subscriber_name) -> None:
            self._active_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Error in async subscriber", subscriber_name=sn, error=str(exc), error_type=type(exc).__name__)

        task.add_done_callback(_on_done)

    def subscribe(self, event_type: type[T], handler: Callable[[T], Any]) -> Unsubscribe:
        """
        Subscribe to events of a specific type.

        Args:
            event_type: The type of event to subscribe to
            handler: Called with the event object for each published event

        Returns:
            A callable that removes this subscription
        """
        if not isinstance(event_type, type) or not issubclass(event_type, BaseEvent):
            raise ValueError("Event type must inherit from BaseEvent")

        if not callable(handler):
            raise ValueError("Handler must be callable")

        self._subscribers[event_type].append(handler)
        logger.debug("Added subscriber for event type", event_type=event_type.__name__)

        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: type[T], handler: Callable[[T], Any]) -> bool:
        """
        Unsubscribe from events of a specific type.

        Returns:
            True if the handler was found and removed, False otherwise
        """
        subscribers = self._subscribers.get(event_type, [])
        try:
            subscribers.remove(handler)
        except ValueError:
            return False
        logger.debug("Removed subscriber for event type", event_type=event_type.__name__)
        return True

    def get_subscriber_count(self, event_type: type[BaseEvent]) -> int:
        """Number of subscribers for a specific event type."""
        return len(self._subscribers.get(event_type, []))

    async def shutdown(self) -> None:
        """Cancel in-flight async subscribers and drop all subscriptions."""
        tasks = [task for task in self._active_tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._active_tasks.clear()
        self._subscribers.clear()
        logger.info("EventBus shut down", cancelled_tasks=len(tasks))
