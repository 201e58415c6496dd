from __future__ import annotations

import pytest

from rank_session_engine.core.actor_context import build_user_action_persona, resolve_actor_context, resolve_slot_binding
from rank_session_engine.core.errors import EmptyRosterError
from rank_session_engine.core.participants import (
    build_slots_from_participants,
    coerce_participants,
    derive_eligible_owner_ids,
    with_status,
)
from rank_session_engine.core.preflight import prepare_session_roster, reconcile_participants
from rank_session_engine.core.types import Node, Participant


def _roster():
    return coerce_participants(
        [
            {"ownerId": "u1", "heroId": "h1", "role": "attack", "slotIndex": 0, "heroName": "Aria"},
            {"owner": {"id": "u2"}, "hero": {"id": "h2", "name": "Bex"}, "role": "defense", "status": "대역"},
            {"owner_id": "u3", "hero_id": "h3", "role": "defense", "status": "defeated"},
        ]
    )


def test_coerce_participants_reads_camel_and_nested_keys():
    roster = _roster()
    assert roster[0].owner_id == "u1"
    assert roster[0].slot_index == 0
    assert roster[1].owner_id == "u2"
    assert roster[1].hero_name == "Bex"
    assert roster[1].slot_index == 1
    assert roster[1].status == "proxy"


def test_eligible_owners_skip_proxy_and_defeated():
    assert derive_eligible_owner_ids(_roster()) == ["u1"]


def test_with_status_reports_change_only_once():
    roster = _roster()
    patched, changed = with_status(roster, ["u1"], "proxy")
    assert changed is True
    assert patched[0].status == "proxy"
    _, changed_again = with_status(patched, ["u1"], "proxy")
    assert changed_again is False


def test_first_claimant_keeps_slot():
    roster = [
        Participant(owner_id="a", hero_id="h1", slot_index=0, hero_name="First"),
        Participant(owner_id="b", hero_id="h2", slot_index=0, hero_name="Second"),
    ]
    slots = build_slots_from_participants(roster)
    assert len(slots) == 1
    assert slots[0].owner_id == "a"


def test_actor_context_uses_node_slot_number():
    roster = _roster()
    node = Node(id="n1", slot_no=2, slot_type="user_action", visible_slots=(2,))
    context = resolve_actor_context(node, build_slots_from_participants(roster), roster)
    assert context.slot_index == 1
    assert context.owner_id == "u2"

    binding = resolve_slot_binding(node, context)
    assert binding.has_limited_audience is True
    assert binding.prompt_audience == {"audience": "slots", "slots": [1]}

    system, prompt = build_user_action_persona(context)
    assert "Bex" in system
    assert prompt == "[Bex의 행동]"


def test_reconcile_removes_role_mismatch_by_slot_layout():
    participants = [
        {"ownerId": "u1", "heroId": "h1", "role": "attack", "slotIndex": 0},
        {"ownerId": "u2", "heroId": "h2", "role": "attack", "slotIndex": 1},
    ]
    layout = [{"slot_index": 0, "role": "attack"}, {"slot_index": 1, "role": "defense"}]
    result = reconcile_participants(participants, layout)
    assert [p.owner_id for p in result.participants] == ["u1"]
    assert len(result.removed) == 1
    mismatch = result.removed[0].mismatches[0]
    assert (mismatch.source, mismatch.expected, mismatch.declared) == ("slot", "defense", "attack")


def test_reconcile_matches_roles_case_insensitively_from_matching_metadata():
    participants = [{"ownerId": "u1", "heroId": "h1", "role": "Attack", "slotIndex": 0}]
    metadata = {"matching": {"assignments": [{"role": "attack", "members": [{"ownerId": "u1"}]}]}}
    result = reconcile_participants(participants, [], metadata)
    assert result.removed == []


def test_prepare_session_roster_refuses_empty_result():
    participants = [{"ownerId": "u1", "heroId": "h1", "role": "attack"}]
    with pytest.raises(EmptyRosterError) as excinfo:
        prepare_session_roster(participants, [], {"heroMap": {"h1": "defense"}})
    assert excinfo.value.code == "empty_roster"
    assert len(excinfo.value.removed) == 1


def test_reconcile_keeps_participant_without_declared_role():
    participants = [{"ownerId": "u1", "heroId": "h1", "slotIndex": 0}]
    result = reconcile_participants(participants, [{"slot_index": 0, "role": "attack"}])
    assert [p.owner_id for p in result.participants] == ["u1"]
    assert result.removed == []


def test_reconcile_never_infers_slot_from_roster_position():
    participants = [{"ownerId": "u9", "heroId": "h9", "role": "defense"}]
    result = reconcile_participants(participants, [{"slot_index": 0, "role": "attack"}])
    assert [p.owner_id for p in result.participants] == ["u9"]
    assert result.removed == []


def test_layout_entries_without_slot_index_are_skipped():
    participants = [{"ownerId": "u1", "heroId": "h1", "role": "defense", "slotIndex": 0}]
    layout = [{"role": "attack", "heroId": "h1"}, {"slot_index": "x", "role": "attack"}]
    result = reconcile_participants(participants, layout)
    assert result.removed == []


def test_reconcile_reads_nested_member_ids_and_local_slot_indexes():
    participants = [
        {"ownerId": "u1", "heroId": "h1", "role": "defense"},
        {"ownerId": "u2", "heroId": "h2", "role": "defense", "slotIndex": 4},
        {"ownerId": "u3", "heroId": "h3", "role": "attack", "slot_no": 2},
    ]
    metadata = {
        "assignments": [
            {
                "role": "attack",
                "roleSlots": [{"localIndex": 4}],
                "members": [{"hero": {"id": "h1"}, "owner": {"id": "u1"}}, {"slot_no": 2}],
            }
        ]
    }
    result = reconcile_participants(participants, [], metadata)
    assert [p.owner_id for p in result.participants] == ["u3"]
    removed = {entry.participant.owner_id: {m.source for m in entry.mismatches} for entry in result.removed}
    assert removed == {"u1": {"hero", "owner"}, "u2": {"slot"}}


def test_hero_map_reads_alternate_role_keys_and_slot():
    participants = [
        {"ownerId": "u1", "heroId": "h1", "role": "attack"},
        {"ownerId": "u2", "heroId": "h2", "role": "attack", "slotIndex": 3},
    ]
    metadata = {"heroMap": {"h1": {"expectedRole": "defense"}, "h9": {"matchRole": "support", "slotIndex": 3}}}
    result = reconcile_participants(participants, [], metadata)
    assert result.participants == []
    assert result.removed[0].mismatches[0].expected == "defense"
    assert result.removed[1].mismatches[0].source == "slot"
    assert result.removed[1].mismatches[0].expected == "support"
