from __future__ import annotations

from rank_session_engine.core.battle_log import build_battle_log_draft
from rank_session_engine.core.types import (
    DropInRoleStats,
    DropInSnapshot,
    HistoryEntry,
    Participant,
    PresenceEntry,
    RealtimePresenceSnapshot,
    TimelineEvent,
    TurnLogRecord,
)


def _participants():
    return [
        Participant(owner_id="u1", hero_id="h1", role="attack", slot_index=0, hero_name="Aria", score=10),
        Participant(owner_id="u2", hero_id="h2", role="defense", slot_index=1, hero_name="Bex"),
    ]


def test_draft_summarizes_turns_history_and_timeline():
    log = TurnLogRecord(
        turn=1,
        node_id="n1",
        slot_index=1,
        prompt="prompt",
        response="response",
        visible_response="response",
        outcome="승리",
        variables=("HP", "hp", " "),
        next="n2",
        action="continue",
        actors=("Bex",),
        prompt_audience={"audience": "slots", "slots": [1, 1]},
        response_audience={"audience": "all"},
    )
    history = [HistoryEntry(role="system", content="hidden", public=False, audience="slots", slots=(1,))]
    events = [
        TimelineEvent(id="b", type="warning", owner_id="u2", timestamp=20),
        TimelineEvent(id="a", type="drop_in_joined", owner_id="u1", timestamp=10),
    ]
    presence = RealtimePresenceSnapshot(entries=(PresenceEntry(owner_id="u2", status="proxy", inactivity_strikes=3),))
    drop_in = DropInSnapshot(turn=1, roles=(DropInRoleStats(role="attack", total_arrivals=2, replacements=1, active_owner_id="u1"),))

    draft = build_battle_log_draft(
        game_id="g1",
        session_id="s1",
        game_name="Arena",
        result="win",
        reason="win",
        logs=[log],
        history_entries=history,
        timeline_events=events,
        participants=_participants(),
        realtime_presence=presence,
        drop_in_snapshot=drop_in,
        win_count=1,
        end_turn=4,
        ended_at_ms=0,
    ).to_dict()

    meta = draft["meta"]
    assert meta["result"] == "win"
    assert meta["turn_count"] == 1
    assert meta["timeline_event_count"] == 2
    assert meta["generated_at"] == "1970-01-01T00:00:00+00:00"
    assert meta["drop_in"]["roles"][0]["replacements"] == 1

    turn = draft["turns"][0]
    assert turn["prompt"]["audience"] == {"type": "slots", "slots": [1]}
    assert turn["response"]["audience"] == {"type": "all", "slots": []}
    assert turn["variables"] == ["HP"]
    assert turn["actor"]["owner_id"] == "u2"

    assert draft["participants"][0]["drop_in"]["total_arrivals"] == 2
    assert draft["participants"][1]["status"] == "proxy"
    assert draft["participants"][1]["presence"]["inactivity_strikes"] == 3

    assert draft["history"][0]["public"] is False
    assert draft["history"][0]["audience"] == {"type": "slots", "slots": [1]}
    assert [event["id"] for event in draft["timeline"]] == ["a", "b"]


def test_draft_does_not_alias_inputs():
    summary = {"preview": "text"}
    log = {"turn": 1, "slot_index": 0, "summary": summary}
    draft = build_battle_log_draft(logs=[log], participants=_participants()).to_dict()
    draft["turns"][0]["summary"]["preview"] = "changed"
    assert summary["preview"] == "text"
    assert draft["meta"]["result"] == "unknown"
