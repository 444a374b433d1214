"""Cross-context change notifications.

Every write to the record store is published here as ``(key, new_value)``.
A context never receives its own writes, so whoever mutates state must also
update its local view at the point of mutation.
"""
import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger("shesurvived.notifier")

ANY_KEY = "*"


@dataclass(frozen=True)
class ChangeEvent:
    key: str
    new_value: Optional[str]
    origin: Optional[str] = None


Handler = Callable[[ChangeEvent], Any]


class Subscription:
    """One handler registered on one key, with its own delivery queue."""

    def __init__(self, bus: "ChangeBus", key: str, handler: Handler, context: Optional[str]):
        self.bus = bus
        self.key = key
        self.handler = handler
        self.context = context
        self.queue: asyncio.Queue = asyncio.Queue()
        self.active = True
        self.pending = 0
        self._task = asyncio.get_running_loop().create_task(self._pump())

    def wants(self, event: ChangeEvent) -> bool:
        if not self.active:
            return False
        if self.key != ANY_KEY and self.key != event.key:
            return False
        # cross-context only
        return self.context is None or self.context != event.origin

    async def _pump(self):
        while True:
            event = await self.queue.get()
            try:
                result = self.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Change handler for '{self.key}' failed")
            finally:
                self.pending -= 1
                self.queue.task_done()

    def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        self.bus._remove(self)
        self._task.cancel()
        # nothing else will drain what is left
        while not self.queue.empty():
            self.queue.get_nowait()
            self.pending -= 1
            self.queue.task_done()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.unsubscribe()


class ChangeBus:
    def __init__(self):
        self._subscriptions: List[Subscription] = []

    def subscribe(self, key: str, handler: Handler, context: Optional[str] = None) -> Subscription:
        """Call ``handler`` with every future change to ``key`` made outside ``context``.

        Must be called with a running event loop. Use ``ANY_KEY`` for every key.
        """
        subscription = Subscription(self, key, handler, context)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, key: str, new_value: Optional[str], origin: Optional[str] = None):
        event = ChangeEvent(key=key, new_value=new_value, origin=origin)
        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                subscription.pending += 1
                subscription.queue.put_nowait(event)

    def subscriber_count(self, key: Optional[str] = None) -> int:
        if key is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions if s.key in (key, ANY_KEY))

    async def flush(self):
        """Wait until every queued event has been handled, including cascades."""
        while True:
            pending = [s for s in self._subscriptions if s.pending]
            if not pending:
                return
            await asyncio.gather(*(s.queue.join() for s in pending))

    def close(self):
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()

    def _remove(self, subscription: Subscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)


def decode(event: ChangeEvent, default: Any) -> Any:
    if event.new_value is None:
        return default
    try:
        return json.loads(event.new_value)
    except ValueError:
        logger.error(f"Dropping unreadable value published for '{event.key}'")
        return default

