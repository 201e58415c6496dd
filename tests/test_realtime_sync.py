from __future__ import annotations

import asyncio

from rank_session_engine.core.sync import TIMELINE_EVENT, RealtimeSync, timeline_topic, turn_state_topic
from rank_session_engine.core.types import RealtimePresenceSnapshot, TimelineEvent
from rank_session_engine.realtime import LocalRealtimeHub


def test_hub_filters_by_event_and_counts_deliveries():
    async def run_test():
        hub = LocalRealtimeHub()
        received = []
        statuses = []
        subscription = await hub.subscribe("topic", received.append, event="wanted", on_status=statuses.append)

        assert statuses == ["SUBSCRIBED"]
        assert await hub.publish("topic", "other", {"x": 1}) == 0
        assert await hub.publish("topic", "wanted", {"x": 2}) == 1
        assert received == [{"x": 2}]

        await subscription.unsubscribe()
        assert subscription.status == "CLOSED"
        assert hub.subscriber_count("topic") == 0
        assert await hub.publish("topic", "wanted", {"x": 3}) == 0

    asyncio.run(run_test())


def test_failing_handler_does_not_block_others():
    async def run_test():
        hub = LocalRealtimeHub()
        received = []

        async def broken(_payload):
            raise RuntimeError("boom")

        await hub.subscribe("topic", broken)
        await hub.subscribe("topic", received.append)
        assert await hub.publish("topic", "any", {"ok": True}) == 1
        assert received == [{"ok": True}]

    asyncio.run(run_test())


def test_attach_backfills_and_merges_broadcasts():
    async def run_test():
        hub = LocalRealtimeHub()
        changes = []

        async def backfill(session_id):
            return [{"id": "old", "type": "turn_timeout", "timestamp": 10, "turn": 1}]

        sync = RealtimeSync(hub, apply_turn_state_change=changes.append, backfill=backfill)
        await sync.attach("s1")
        assert [event.id for event in sync.events] == ["old"]

        await hub.publish(
            timeline_topic("s1"),
            TIMELINE_EVENT,
            {"events": [{"id": "new", "type": "warning", "ownerId": "u1", "timestamp": 20}, {"id": "old", "type": "turn_timeout", "timestamp": 10}]},
        )
        assert [event.id for event in sync.events] == ["old", "new"]

        await hub.publish(turn_state_topic("s1"), "INSERT", {"eventType": "INSERT", "new": {"turn_number": 2}})
        assert changes == [{"eventType": "INSERT", "new": {"turn_number": 2}}]

    asyncio.run(run_test())


def test_detach_clears_state_and_stops_delivery():
    async def run_test():
        hub = LocalRealtimeHub()
        sync = RealtimeSync(hub)
        await sync.attach("s1")
        sync.apply_snapshot(
            RealtimePresenceSnapshot(events=(TimelineEvent(id="w", type="warning", owner_id="u1", timestamp=5),))
        )
        assert [event.id for event in sync.events] == ["w"]

        await sync.detach()
        assert sync.events == []
        assert sync.presence is None
        assert sync.session_id is None
        assert hub.subscriber_count(timeline_topic("s1")) == 0

    asyncio.run(run_test())


def test_stale_backfill_is_discarded_after_switching_sessions():
    async def run_test():
        hub = LocalRealtimeHub()
        gate = asyncio.Event()
        calls = []

        async def backfill(session_id):
            calls.append(session_id)
            if session_id == "s1":
                await gate.wait()
            return [{"id": f"{session_id}-event", "type": "turn_timeout", "timestamp": 1}]

        sync = RealtimeSync(hub, backfill=backfill)
        pending = asyncio.ensure_future(sync.attach("s1"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        sync.session_id = "s2"
        gate.set()
        await pending
        assert calls == ["s1"]
        assert all(event.id != "s1-event" for event in sync.events)

    asyncio.run(run_test())
