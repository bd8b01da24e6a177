"""
Topic-Based Observer Registry

Adapters and the connection manager publish lifecycle and stream events
through an EventBus. Each topic holds an ordered list of callbacks; removing
a callback (or every callback of a topic) takes it out of the registry, so
nothing keeps listening after it was unsubscribed.

Delivery is synchronous and in registration order. A failing listener is
logged and skipped; it never prevents delivery to the next one.

Usage:
    bus = EventBus("binance")
    bus.on("connected", lambda payload: print("up", payload))
    bus.emit("connected", {"name": "binance"})
"""

import inspect
import asyncio
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List, Set

from core.logging import get_logger


Listener = Callable[[Any], Any]


class EventBus:
    """
    Synchronous pub/sub registry keyed by topic name.

    - `on` ignores a callback already registered for the same topic
    - `off` with no callback clears the whole topic
    - coroutine listeners are scheduled on the running loop and held until
      they finish; their exceptions are logged like synchronous ones
    """

    def __init__(self, owner: str = "") -> None:
        self._topics: DefaultDict[str, List[Listener]] = defaultdict(list)
        self._owner = owner
        self._logger = get_logger(__name__)
        self._pending: Set[asyncio.Future] = set()

    def on(self, topic: str, callback: Listener) -> None:
        listeners = self._topics[topic]
        if callback not in listeners:
            listeners.append(callback)
            self._logger.debug(f"[{self._owner}] listener added to '{topic}'. total={len(listeners)}")

    def off(self, topic: str, callback: Listener = None) -> None:
        """
        Remove one listener, or every listener of the topic when callback is None.
        """
        if topic not in self._topics:
            return
        if callback is None:
            del self._topics[topic]
        else:
            listeners = self._topics[topic]
            if callback in listeners:
                listeners.remove(callback)
            if not listeners:
                del self._topics[topic]
        self._logger.debug(f"[{self._owner}] listener(s) removed from '{topic}'")

    def emit(self, topic: str, payload: Any = None) -> int:
        """
        Deliver payload to every listener of topic.

        Returns:
            int: Number of listeners invoked
        """
        listeners = list(self._topics.get(topic, ()))
        for callback in listeners:
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    self._schedule(result, topic)
            except Exception as e:
                self._logger.error(f"[{self._owner}] listener for '{topic}' raised: {e}")
        return len(listeners)

    def _schedule(self, awaitable: Any, topic: str) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def done(future: asyncio.Future) -> None:
            self._pending.discard(future)
            if not future.cancelled() and future.exception() is not None:
                self._logger.error(
                    f"[{self._owner}] listener for '{topic}' raised: {future.exception()}"
                )

        task.add_done_callback(done)

    def listener_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def topics(self) -> List[str]:
        return list(self._topics.keys())

    def clear(self) -> None:
        self._topics.clear()
