from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from .ports import RealtimePort, Subscription
from .timeline import append_snapshot_events, merge_timeline_events
from .types import RealtimePresenceSnapshot, TimelineEvent

logger = logging.getLogger(__name__)

TIMELINE_EVENT = "rank:timeline-event"
SUBSCRIBED = "SUBSCRIBED"

TurnStateApplier = Callable[[Mapping[str, Any]], Optional[Awaitable[None]]]
Backfill = Callable[[str], Awaitable[Iterable[Any]]]


def timeline_topic(session_id: str) -> str:
    return f"rank-session:{session_id}"


def turn_state_topic(session_id: str) -> str:
    return f"rank_turn_state_events:session:{session_id}"


async def _maybe_await(value: Any) -> None:
    if asyncio.iscoroutine(value) or isinstance(value, asyncio.Future):
        await value


class RealtimeSync:
    """Keeps the merged timeline and presence snapshot for one session id."""

    def __init__(
        self,
        transport: RealtimePort,
        *,
        apply_turn_state_change: TurnStateApplier | None = None,
        backfill: Backfill | None = None,
    ):
        self._transport = transport
        self._apply_turn_state_change = apply_turn_state_change
        self._backfill = backfill
        self.session_id: str | None = None
        self.events: list[TimelineEvent] = []
        self.presence: RealtimePresenceSnapshot | None = None
        self._subscriptions: list[Subscription] = []

    def merge_events(self, incoming: Iterable[Any]) -> list[TimelineEvent]:
        self.events = merge_timeline_events(self.events, incoming)
        return self.events

    def apply_snapshot(self, snapshot: RealtimePresenceSnapshot | None) -> None:
        if snapshot is None:
            return
        self.presence = snapshot
        self.events = append_snapshot_events(self.events, snapshot)

    async def attach(self, session_id: str | None) -> None:
        if session_id == self.session_id and self._subscriptions:
            return
        await self.detach()
        self.session_id = session_id
        if not session_id:
            return

        self._subscriptions.append(
            await self._transport.subscribe(
                timeline_topic(session_id),
                self._handle_timeline,
                event=TIMELINE_EVENT,
                on_status=self._handle_status,
            )
        )
        self._subscriptions.append(
            await self._transport.subscribe(
                turn_state_topic(session_id),
                self._handle_turn_state,
            )
        )

    async def detach(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            try:
                await subscription.unsubscribe()
            except Exception:
                logger.warning("Failed to unsubscribe from %s", subscription.topic, exc_info=True)
        if subscriptions:
            self.events = []
            self.presence = None
        self.session_id = None

    async def _handle_timeline(self, message: Mapping[str, Any]) -> None:
        payload = message.get("payload") if isinstance(message.get("payload"), Mapping) else message
        events = payload.get("events") if isinstance(payload, Mapping) else None
        if isinstance(events, list) and events:
            self.merge_events(events)

    async def _handle_turn_state(self, message: Mapping[str, Any]) -> None:
        if self._apply_turn_state_change is None:
            return
        try:
            await _maybe_await(self._apply_turn_state_change(message))
        except Exception:
            logger.warning("Turn state change handler failed for session %s", self.session_id, exc_info=True)

    async def _handle_status(self, status: str) -> None:
        if status != SUBSCRIBED:
            if status in ("CHANNEL_ERROR", "TIMED_OUT"):
                logger.warning("Realtime channel for session %s reported %s", self.session_id, status)
            return
        await self.backfill()

    async def backfill(self) -> list[TimelineEvent]:
        session_id = self.session_id
        if self._backfill is None or not session_id:
            return self.events
        try:
            recovered = await self._backfill(session_id)
        except Exception:
            logger.warning("Timeline backfill failed for session %s", session_id, exc_info=True)
            return self.events
        if session_id != self.session_id:
            return self.events
        return self.merge_events(recovered or [])
