"""In-process event bus for chat subscribers.

The chat core reports everything a UI (or test harness) cares about through
three independent channels:

- ``status``  -- short human-readable status lines (``StatusEvent``)
- ``message`` -- chat lines sent or received (``Message``)
- ``peers``   -- full peer snapshots (``PeersEvent``)

Delivery is in publish order within a channel; nothing is promised across
channels.  Subscribers either register callbacks (``on_status`` etc.) or take
a ``Subscription`` that buffers events in one unbounded queue per channel.
All publishing happens on the event loop thread, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from loguru import logger

from directchat.mesh.registry import Peer
from directchat.mesh.resilience import supervised_task


class Channel(str, Enum):
    """Event channels exposed to subscribers."""

    STATUS = "status"
    MESSAGE = "message"
    PEERS = "peers"


class Direction(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


@dataclass(frozen=True)
class StatusEvent:
    text: str


@dataclass(frozen=True)
class Message:
    """One chat line. Not persisted by the core."""

    text: str
    direction: Direction
    ordinal: int = 0  # Bus-wide publish counter


@dataclass(frozen=True)
class PeersEvent:
    peers: tuple[Peer, ...] = field(default_factory=tuple)


EventCallback = Callable[[Any], Any]


class Subscription:
    """Queue-backed subscriber attached to one or more channels.

    Use as a context manager to detach automatically::

        with bus.subscribe(Channel.MESSAGE) as sub:
            msg = await sub.get(Channel.MESSAGE)
    """

    def __init__(self, bus: EventBus, channels: Iterable[Channel]):
        self._bus = bus
        self.queues: dict[Channel, asyncio.Queue] = {
            Channel(ch): asyncio.Queue() for ch in channels
        }

    @property
    def channels(self) -> set[Channel]:
        return set(self.queues)

    def _deliver(self, channel: Channel, event: Any) -> None:
        queue = self.queues.get(channel)
        if queue is not None:
            queue.put_nowait(event)

    async def get(self, channel: Channel, timeout: float | None = None) -> Any:
        """Wait for the next event on *channel*."""
        queue = self.queues[Channel(channel)]
        if timeout is None:
            return await queue.get()
        return await asyncio.wait_for(queue.get(), timeout=timeout)

    def drain(self, channel: Channel) -> list[Any]:
        """Return every event currently buffered on *channel*."""
        queue = self.queues[Channel(channel)]
        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class EventBus:
    """Three-channel publish/subscribe hub."""

    def __init__(self) -> None:
        self._callbacks: dict[Channel, list[EventCallback]] = {ch: [] for ch in Channel}
        self._subscriptions: list[Subscription] = []
        self._ordinal = itertools.count(1)

    # -- callback registration -----------------------------------------------

    def on_status(self, callback: EventCallback) -> None:
        """Register a callback receiving every ``StatusEvent``."""
        self._callbacks[Channel.STATUS].append(callback)

    def on_message(self, callback: EventCallback) -> None:
        """Register a callback receiving every sent or received ``Message``."""
        self._callbacks[Channel.MESSAGE].append(callback)

    def on_peers(self, callback: EventCallback) -> None:
        """Register a callback receiving every ``PeersEvent``."""
        self._callbacks[Channel.PEERS].append(callback)

    def off(self, channel: Channel, callback: EventCallback) -> None:
        try:
            self._callbacks[Channel(channel)].remove(callback)
        except ValueError:
            pass

    # -- queue subscriptions -------------------------------------------------

    def subscribe(self, *channels: Channel) -> Subscription:
        """Attach a queue subscriber (all channels when none are given)."""
        sub = Subscription(self, channels or tuple(Channel))
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + sum(len(cbs) for cbs in self._callbacks.values())

    # -- publishing ----------------------------------------------------------

    def publish(self, channel: Channel, event: Any) -> None:
        """Deliver *event* to every callback and subscription on *channel*.

        Callbacks run synchronously in registration order.  A callback that
        returns a coroutine has it scheduled as a task; one that raises is
        logged and skipped.
        """
        channel = Channel(channel)
        for cb in list(self._callbacks[channel]):
            try:
                result = cb(event)
                if asyncio.iscoroutine(result):
                    supervised_task(result, name=f"event-{channel.value}")
            except Exception as exc:
                logger.error("[Chat/Events] {} callback error: {}", channel.value, exc)
        for sub in list(self._subscriptions):
            sub._deliver(channel, event)

    def status(self, text: str) -> StatusEvent:
        event = StatusEvent(text)
        logger.info("[Chat/Events] status: {}", text)
        self.publish(Channel.STATUS, event)
        return event

    def message_received(self, text: str) -> Message:
        msg = Message(text=text, direction=Direction.RECEIVED, ordinal=next(self._ordinal))
        self.publish(Channel.MESSAGE, msg)
        return msg

    def message_sent(self, text: str) -> Message:
        msg = Message(text=text, direction=Direction.SENT, ordinal=next(self._ordinal))
        self.publish(Channel.MESSAGE, msg)
        return msg

    def peers_updated(self, peers: Iterable[Peer]) -> PeersEvent:
        event = PeersEvent(tuple(peers))
        self.publish(Channel.PEERS, event)
        return event
