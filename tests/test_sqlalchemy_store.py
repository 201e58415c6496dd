from __future__ import annotations

from sqlalchemy import select

from rank_session_engine.core.types import TimelineEvent
from rank_session_engine.persistence.sqlalchemy.models import RankSession, RankTimelineEvent


def test_start_session_reuses_latest_active(store):
    first = store.start_session("game-1", "owner-1")
    again = store.start_session("game-1", "owner-1")
    fresh = store.start_session("game-1", "owner-1", reuse=False)

    assert first.reused is False
    assert again.id == first.id
    assert again.reused is True
    assert fresh.id != first.id


def test_fetch_latest_active_filters_by_owner(store, started_session):
    assert store.fetch_latest_active_session("game-1", "owner-1").id == started_session.id
    assert store.fetch_latest_active_session("game-1", "owner-2") is None
    assert store.fetch_latest_active_session("game-2") is None


def test_turn_entries_skip_blank_content_and_bump_turn(store, started_session, session_factory):
    written = store.append_turn_entries(
        started_session.id,
        [
            {"role": "system", "content": "prompt", "public": False, "extra": {"slot_index": 0}},
            {"role": "assistant", "content": "   "},
            {"role": "assistant", "content": "reply", "actors": ["Aria"]},
        ],
        3,
    )
    assert written == 2

    entries = store.list_turn_entries(started_session.id)
    assert [entry["content"] for entry in entries] == ["prompt", "reply"]
    assert entries[0]["visibility"] == "private"
    assert entries[0]["extra"] == {"slot_index": 0}
    assert entries[1]["actors"] == ["Aria"]

    with session_factory() as session:
        row = session.execute(select(RankSession).where(RankSession.id == started_session.id)).scalar_one()
        assert row.turn == 3


def test_timeline_events_are_idempotent_per_session(store, started_session, session_factory):
    events = [
        TimelineEvent(id="warning:u1:1:1", type="warning", owner_id="u1", turn=1, timestamp=2000, strike=1, limit=3),
        {"id": "drop_in_joined:h2:1", "type": "drop_in_joined", "ownerId": "u2", "timestamp": 1000, "context": {"role": "attack"}},
    ]
    assert store.append_timeline_events(started_session.id, events, game_id="game-1") == 2
    assert store.append_timeline_events(started_session.id, events, game_id="game-1") == 0

    restored = store.fetch_timeline_events(started_session.id)
    assert [event.id for event in restored] == ["drop_in_joined:h2:1", "warning:u1:1:1"]
    assert restored[0].timestamp == 1000
    assert restored[0].context == {"role": "attack"}
    assert restored[1].limit == 3

    with session_factory() as session:
        assert len(session.execute(select(RankTimelineEvent)).scalars().all()) == 2


def test_complete_session_only_once(store, started_session):
    assert store.complete_session(started_session.id, result="win", reason="win", payload={"turn_number": 4}) is True
    assert store.complete_session(started_session.id, result="lose", reason="lose") is False
    assert store.fetch_latest_active_session("game-1") is None


def test_battle_log_saved_once_per_signature(store, started_session):
    draft = {"meta": {"result": "win", "reason": "win"}, "turns": []}
    assert store.save_battle_log(started_session.id, draft, signature="sig-1", game_id="game-1") is True
    assert store.save_battle_log(started_session.id, draft, signature="sig-1", game_id="game-1") is False
    assert store.save_battle_log(started_session.id, draft, signature="sig-2", game_id="game-1") is True
    assert len(store.list_battle_logs(started_session.id)) == 2


def test_turn_state_records_are_returned(store, started_session, uow_factory):
    row = store.record_turn_state(started_session.id, 2, "completed:timeout", deadline=10)
    assert row["status"] == "completed:timeout"
    assert row["deadline"] == 10
    with uow_factory() as uow:
        assert uow.turn_states.latest(started_session.id).turn_number == 2
