from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Mapping

from ..core.ports import MessageHandler

logger = logging.getLogger(__name__)

StatusHandler = Callable[[str], Awaitable[None] | None]


async def _call(handler: Callable[..., Any], *args: Any) -> None:
    result = handler(*args)
    if asyncio.iscoroutine(result):
        await result


class LocalSubscription:
    def __init__(self, hub: "LocalRealtimeHub", topic: str, handler: MessageHandler, event: str | None):
        self._hub = hub
        self._topic = topic
        self.handler = handler
        self.event = event
        self._status = "JOINING"

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def status(self) -> str:
        return self._status

    def accepts(self, event: str) -> bool:
        return self.event is None or self.event == event

    async def unsubscribe(self) -> None:
        if self._status == "CLOSED":
            return
        self._hub._remove(self)
        self._status = "CLOSED"


class LocalRealtimeHub:
    """In-process pub/sub used for single-process deployments and tests."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[LocalSubscription]] = defaultdict(list)

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        event: str | None = None,
        on_status: StatusHandler | None = None,
    ) -> LocalSubscription:
        subscription = LocalSubscription(self, topic, handler, event)
        self._subscriptions[topic].append(subscription)
        subscription._status = "SUBSCRIBED"
        if on_status is not None:
            await _call(on_status, subscription.status)
        return subscription

    async def publish(self, topic: str, event: str, payload: Mapping[str, Any]) -> int:
        delivered = 0
        for subscription in list(self._subscriptions.get(topic, ())):
            if not subscription.accepts(event):
                continue
            try:
                await _call(subscription.handler, dict(payload))
            except Exception:
                logger.warning("Realtime handler failed on topic %s event %s", topic, event, exc_info=True)
                continue
            delivered += 1
        return delivered

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, ()))

    def _remove(self, subscription: LocalSubscription) -> None:
        subscribers = self._subscriptions.get(subscription.topic)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._subscriptions[subscription.topic]
