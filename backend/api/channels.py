"""
Per-game broadcast channels.
The hub is owned by the app; every listener (websocket, in-process spectator) owns its own
Subscription, acquired with `async with hub.subscribe(game_id)` and released on exit.
Delivery is best-effort and unordered across subscriptions; each subscription sees events in
publish order.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator

from backend.engine.events import DrawEvent, channel_name

logger = logging.getLogger(__name__)


class Subscription:
    """One listener's connection to a game's channel."""

    def __init__(self, hub: "ChannelHub", game_id: str, loop: asyncio.AbstractEventLoop):
        self.hub = hub
        self.game_id = game_id
        self.channel = channel_name(game_id)
        self._loop = loop
        self._queue: asyncio.Queue[DrawEvent | None] = asyncio.Queue()
        self.closed = False
        self._drained = False

    def _deliver(self, event: DrawEvent | None) -> None:
        # Called from any thread; the queue is only touched on the subscriber's loop
        if self.closed and event is not None:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            # Subscriber's loop already shut down
            self.closed = True

    async def get(self) -> DrawEvent | None:
        """Next event, or None once the subscription is closed and drained."""
        if self._drained:
            return None
        event = await self._queue.get()
        if event is None:
            self._drained = True
        return event

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> DrawEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.hub._remove(self)
        # Wake a reader blocked in get()
        self._deliver(None)


class ChannelHub:
    """In-process pub/sub keyed by game id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, set[Subscription]] = {}

    def open(self, game_id: str) -> Subscription:
        """Register a subscription on the running loop. Prefer subscribe() for scoped use."""
        sub = Subscription(self, game_id, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.setdefault(game_id, set()).add(sub)
        logger.debug("Subscribed to %s (%d listeners)", sub.channel, self.listener_count(game_id))
        return sub

    @asynccontextmanager
    async def subscribe(self, game_id: str) -> AsyncIterator[Subscription]:
        sub = self.open(game_id)
        try:
            yield sub
        finally:
            sub.close()

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.game_id)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._subscriptions[sub.game_id]

    def listener_count(self, game_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(game_id, ()))

    def publish(self, game_id: str, event: DrawEvent) -> int:
        """Fan event out to every live subscription of the game. Returns the number reached."""
        with self._lock:
            subs = list(self._subscriptions.get(game_id, ()))
        for sub in subs:
            sub._deliver(event)
        logger.info("Broadcast %s %s to %d listeners on %s",
                    event.type, event.payload, len(subs), channel_name(game_id))
        return len(subs)
