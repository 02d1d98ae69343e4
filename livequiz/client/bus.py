"""bus.py: Message bus adapter core.

Subscriptions are keyed by (channel, event name). The event name "*" is a
wildcard that receives every event published on the channel.

subscribe() returns a Subscription handle. Handles are collected in a
SubscriptionSet per session so that teardown releases every channel in one
step; a released handle never fires again, even for a message that was
already being fanned out when it was released.

Two implementations:
  - LocalBus: in-process delivery. Used by tests and by the server hub.
  - WSBus (ws_client.py): the same API over the hub websocket.
"""

from __future__ import annotations

import inspect
import json
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .common import Events, logger
from .errors import TransportError


@dataclass
class BusMessage:
    """One delivered message. `data` is the decoded JSON payload."""

    channel: str
    name: str
    data: Any = None
    id: Optional[Union[int, str]] = None
    timestamp: float = field(default_factory=time.time)


Handler = Callable[[BusMessage], Union[Awaitable[None], None]]


class Subscription:
    """Handle for one (channel, event, handler) registration."""

    def __init__(self, bus: "MessageBus", channel: str, event: str, handler: Handler):
        self.bus = bus
        self.channel = channel
        self.event = event
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def matches(self, event: str) -> bool:
        return self.event == Events.ALL_EVENTS or self.event == event

    def release(self) -> None:
        """Stop receiving messages. Idempotent."""
        if not self._active:
            return
        self._active = False
        self.bus._remove(self)

    def __repr__(self) -> str:
        state = "active" if self._active else "released"
        return f"<Subscription {self.channel}:{self.event} {state}>"


class SubscriptionSet:
    """All subscriptions held for one session, released together.

    Usage:
        with SubscriptionSet() as subs:
            subs.add(bus.subscribe(...))
            ...
        # every handle released here, even if one release() raised
    """

    def __init__(self):
        self._subs: List[Subscription] = []

    def add(self, sub: Subscription) -> Subscription:
        self._subs.append(sub)
        return sub

    def __len__(self) -> int:
        return len(self._subs)

    def __iter__(self):
        return iter(list(self._subs))

    @property
    def channels(self) -> set[str]:
        return {s.channel for s in self._subs if s.active}

    def release_all(self) -> None:
        """Release every handle. Safe to call repeatedly."""
        subs, self._subs = self._subs, []
        for sub in subs:
            try:
                sub.release()
            except Exception:
                logger.exception(f"[bus] failed to release {sub!r}")

    def __enter__(self) -> "SubscriptionSet":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release_all()


class MessageBus:
    """Subscription registry and fan-out shared by every bus implementation."""

    def __init__(self):
        self._subs: Dict[str, List[Subscription]] = {}
        self._reconnect_callbacks: List[Callable[[], Awaitable[Any]]] = []

    @property
    def reconnecting(self) -> bool:
        return False

    def on_reconnect(self, callback: Callable[[], Awaitable[Any]]) -> Callable[[], None]:
        """Register a coroutine to run after every reconnect. Returns a remover."""
        self._reconnect_callbacks.append(callback)

        def remove() -> None:
            if callback in self._reconnect_callbacks:
                self._reconnect_callbacks.remove(callback)

        return remove

    async def notify_reconnected(self) -> None:
        for callback in list(self._reconnect_callbacks):
            try:
                await callback()
            except Exception:
                logger.exception("[bus] reconnect callback failed")

    @property
    def channels(self) -> List[str]:
        return list(self._subs)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subs.get(channel, []))

    def subscribe(self, channel: str, event: str, handler: Handler) -> Subscription:
        sub = Subscription(self, channel, event, handler)
        first = channel not in self._subs
        self._subs.setdefault(channel, []).append(sub)
        logger.debug(f"[bus] subscribed {channel}:{event}")
        if first:
            self._on_channel_added(channel)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.release()

    def _remove(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.channel)
        if not subs or sub not in subs:
            return
        subs.remove(sub)
        logger.debug(f"[bus] unsubscribed {sub.channel}:{sub.event}")
        if not subs:
            del self._subs[sub.channel]
            self._on_channel_removed(sub.channel)

    async def publish(self, channel: str, event: str, data: Any = None) -> Any:
        raise NotImplementedError

    async def dispatch(
        self,
        channel: str,
        event: str,
        data: Any = None,
        msg_id: Optional[Union[int, str]] = None,
        timestamp: Optional[float] = None,
    ) -> int:
        """Deliver one inbound message to matching handlers, in registration order.

        Returns the number of handlers invoked.
        """
        msg = BusMessage(
            channel=channel,
            name=event,
            data=data,
            id=msg_id,
            timestamp=timestamp if timestamp is not None else time.time(),
        )
        delivered = 0
        for sub in list(self._subs.get(channel, [])):
            if not sub.active or not sub.matches(event):
                continue
            delivered += 1
            await self._invoke(sub, msg)
        return delivered

    async def _invoke(self, sub: Subscription, msg: BusMessage) -> None:
        try:
            result = sub.handler(msg)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # keep fanning out to the remaining handlers
            logger.exception(f"[bus] handler for {msg.channel}:{msg.name} failed")

    # Hooks for transports that mirror subscriptions remotely.

    def _on_channel_added(self, channel: str) -> None:
        pass

    def _on_channel_removed(self, channel: str) -> None:
        pass


class LocalBus(MessageBus):
    """In-process bus with sequence numbers and a replay buffer.

    Payloads are round-tripped through JSON on publish so that subscribers
    never share mutable objects with the publisher, like on the wire.
    """

    DEFAULT_BUFFER_SIZE = 1000

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        super().__init__()
        self._seq = 0
        self._history: deque[BusMessage] = deque(maxlen=buffer_size)
        self._closed = False

    @property
    def seq(self) -> int:
        return self._seq

    @property
    def history(self) -> List[BusMessage]:
        return list(self._history)

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, channel: str, event: str, data: Any = None) -> int:
        if self._closed:
            raise TransportError("bus is closed")
        self._seq += 1
        encoded = json.dumps(data)
        msg = BusMessage(channel=channel, name=event, data=json.loads(encoded), id=self._seq)
        self._history.append(msg)
        await self.dispatch(channel, event, json.loads(encoded), msg_id=msg.id, timestamp=msg.timestamp)
        return self._seq

    async def redeliver(self, seq: int) -> bool:
        """Deliver an already-published message again (at-least-once)."""
        for msg in self._history:
            if msg.id == seq:
                await self.dispatch(msg.channel, msg.name, json.loads(json.dumps(msg.data)),
                                    msg_id=msg.id, timestamp=msg.timestamp)
                return True
        return False

    def messages(self, channel: str | None = None, event: str | None = None) -> List[BusMessage]:
        return [
            m for m in self._history
            if (channel is None or m.channel == channel) and (event is None or m.name == event)
        ]

    def close(self) -> None:
        self._closed = True
