"""Fan-out reload notifications from the file watcher to SSE streams.

The watcher thread is the only producer. Each SSE connection subscribes
from inside the server's event loop and gets a private queue, so a
subscriber only sees reloads published after it subscribed, and a slow
browser tab never holds up the watcher or its siblings.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

logger = logging.getLogger(__name__)


class Subscription:
    """One consumer handle on a :class:`ReloadBus`."""

    def __init__(self, bus: ReloadBus, loop: asyncio.AbstractEventLoop) -> None:
        self._bus = bus
        self._loop = loop
        self._queue: asyncio.Queue[None] = asyncio.Queue()
        self.closed = False

    def _deliver(self) -> bool:
        """Queue one reload from any thread. Returns False if the loop is gone."""
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, None)
        except RuntimeError:
            return False
        return True

    async def receive(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for a reload.

        Returns True for a reload and False when the timeout expires first.
        """
        try:
            await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class ReloadBus:
    """Publish/subscribe channel carrying "content changed" events."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: set[Subscription] = set()

    def subscribe(self) -> Subscription:
        """Create a subscription bound to the running event loop."""
        sub = Subscription(self, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.add(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(sub)

    def publish(self) -> int:
        """Send one reload to every current subscriber.

        Safe to call from any thread; never blocks. Subscriptions whose
        event loop has closed are dropped. Returns the number of
        subscribers reached.
        """
        with self._lock:
            subscriptions = list(self._subscriptions)
        delivered = 0
        for sub in subscriptions:
            if sub._deliver():
                delivered += 1
            else:
                logger.debug("Dropping subscription with closed event loop")
                sub.close()
        return delivered

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
