"""Progress event bus.

Fans ProgressEvents out to per-request subscriptions and to listeners that
want every event. Each subscription owns a bounded buffer so publishing
never blocks the scheduler; when a buffer is full the oldest event is
dropped.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, Union

from keelscan.core.constants import DEFAULTS
from keelscan.core.exceptions import SubscriberDisconnected
from keelscan.core.models import ProgressEvent


logger = logging.getLogger(__name__)

ProgressHandler = Callable[[ProgressEvent], Union[None, Awaitable[None]]]

# Subscription key for listeners that receive events of every request
WILDCARD = "*"


class Subscription:
    """One consumer's view of the event stream.

    A subscription is either iterated directly::

        async with bus.subscribe(request_id) as subscription:
            async for event in subscription:
                ...

    or drained by a pump task into a handler passed to subscribe().
    Iteration ends once the subscription is closed, which happens after a
    terminal event for its request, on unsubscribe() or when the bus shuts
    down.

    Attributes:
        request_id: Request the subscription follows (WILDCARD for all)
        heartbeat_interval: Idle seconds before a heartbeat is produced
        dropped: Number of events discarded because the buffer was full
    """

    def __init__(
        self,
        bus: "ProgressEventBus",
        request_id: str,
        *,
        buffer_size: int,
        heartbeat_interval: Optional[float],
        last_event: Optional[ProgressEvent] = None,
    ) -> None:
        self.request_id = request_id
        self.heartbeat_interval = heartbeat_interval
        self.dropped = 0
        self._bus = bus
        self._queue: asyncio.Queue[Optional[ProgressEvent]] = asyncio.Queue(maxsize=buffer_size)
        self._last_event = last_event
        self._closed = False
        self._pump_task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_event(self) -> Optional[ProgressEvent]:
        return self._last_event

    def _put(self, item: Optional[ProgressEvent]) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(item)

    def deliver(self, event: ProgressEvent) -> None:
        """Buffer an event without blocking. Ignored once closed."""
        if self._closed:
            return
        self._last_event = event
        self._put(event)

    def close(self) -> None:
        """Stop the subscription. Buffered events are still consumed."""
        if self._closed:
            return
        self._closed = True
        self._bus._discard(self)
        self._put(None)

    unsubscribe = close

    async def get(self) -> Optional[ProgressEvent]:
        """Wait for the next event.

        Returns:
            The next buffered event, a heartbeat after heartbeat_interval
            idle seconds, or None once the subscription is closed and drained
        """
        while True:
            if self._closed and self._queue.empty():
                return None
            try:
                if self.heartbeat_interval is None:
                    event = await self._queue.get()
                else:
                    event = await asyncio.wait_for(
                        self._queue.get(), timeout=self.heartbeat_interval
                    )
            except asyncio.TimeoutError:
                if self._last_event is not None:
                    return self._last_event.as_heartbeat()
                return ProgressEvent.heartbeat(self.request_id)
            if event is None:
                return None
            return event

    def start_pump(self, handler: ProgressHandler) -> None:
        self._pump_task = asyncio.get_running_loop().create_task(
            self._pump(handler), name=f"progress-pump-{self.request_id}"
        )

    async def _pump(self, handler: ProgressHandler) -> None:
        while True:
            event = await self.get()
            if event is None:
                return
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except (SubscriberDisconnected, ConnectionError) as e:
                logger.info(f"Subscriber for {self.request_id} disconnected: {e}")
                self.close()
                return
            except Exception:
                logger.exception(f"Progress handler for {self.request_id} failed")

    async def wait_closed(self) -> None:
        """Wait until the pump task has delivered everything it buffered."""
        if self._pump_task is not None:
            await asyncio.gather(self._pump_task, return_exceptions=True)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class ProgressEventBus:
    """Publish/subscribe hub for ProgressEvents.

    publish() is synchronous and is called from the scheduler's
    non-suspending sections. Events for one request reach its subscribers
    in publish order.

    Args:
        buffer_size: Capacity of every subscription buffer
        heartbeat_interval: Idle seconds before a heartbeat (None disables)
    """

    def __init__(
        self,
        *,
        buffer_size: int = DEFAULTS["subscriber_buffer"],
        heartbeat_interval: Optional[float] = DEFAULTS["heartbeat_interval"],
    ) -> None:
        self.buffer_size = buffer_size
        self.heartbeat_interval = heartbeat_interval
        self._subscriptions: dict[str, set[Subscription]] = {}
        self._listeners: dict[ProgressHandler, Subscription] = {}

    def subscribe(
        self,
        request_id: str,
        handler: Optional[ProgressHandler] = None,
        *,
        current: Optional[ProgressEvent] = None,
    ) -> Subscription:
        """Follow the events of one request.

        Args:
            request_id: Request to follow
            handler: Optional callable fed by a pump task; sync or async
            current: Current state, delivered first and used for heartbeats

        Returns:
            Subscription handle; close() it to unsubscribe
        """
        subscription = Subscription(
            self,
            request_id,
            buffer_size=self.buffer_size,
            heartbeat_interval=self.heartbeat_interval,
        )
        self._subscriptions.setdefault(request_id, set()).add(subscription)

        if current is not None:
            subscription.deliver(current)
            if current.is_terminal:
                subscription.close()

        if handler is not None:
            subscription.start_pump(handler)
        return subscription

    def add_listener(self, handler: ProgressHandler) -> Subscription:
        """Feed every published event to handler. No heartbeats."""
        if handler in self._listeners:
            return self._listeners[handler]
        subscription = Subscription(
            self,
            WILDCARD,
            buffer_size=self.buffer_size,
            heartbeat_interval=None,
        )
        self._subscriptions.setdefault(WILDCARD, set()).add(subscription)
        self._listeners[handler] = subscription
        subscription.start_pump(handler)
        return subscription

    def remove_listener(self, handler: ProgressHandler) -> bool:
        subscription = self._listeners.pop(handler, None)
        if subscription is None:
            return False
        subscription.close()
        return True

    def publish(self, event: ProgressEvent) -> None:
        """Deliver an event to its request's subscribers and all listeners.

        A terminal event closes the request's subscriptions after it is
        buffered, so consumers still receive it.
        """
        targets = list(self._subscriptions.get(event.request_id, ()))
        for subscription in targets:
            subscription.deliver(event)

        for subscription in list(self._subscriptions.get(WILDCARD, ())):
            subscription.deliver(event)

        if event.is_terminal:
            for subscription in targets:
                subscription.close()

    def subscriber_count(self, request_id: Optional[str] = None) -> int:
        if request_id is not None:
            return len(self._subscriptions.get(request_id, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def close_all(self) -> None:
        """Close every subscription and listener."""
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                subscription.close()
        self._listeners.clear()

    def _discard(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.request_id)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.request_id]
        if subscription.request_id == WILDCARD:
            for handler, listener in list(self._listeners.items()):
                if listener is subscription:
                    del self._listeners[handler]
