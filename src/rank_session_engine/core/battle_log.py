"""Builds the persistence-ready battle log of a finished session.

Inputs are never mutated; everything placed in the draft is a deep copy.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from .normalize import normalize_status_token, now_ms, to_int, to_trimmed
from .participants import coerce_participants, find_participant_by_slot
from .timeline import merge_timeline_events
from .types import (
    BattleLogDraft,
    BattleLogMeta,
    DropInSnapshot,
    HistoryEntry,
    Participant,
    RealtimePresenceSnapshot,
    TurnLogRecord,
)


def _as_dict(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, Mapping):
        return copy.deepcopy(dict(value))
    return None


def _dedupe_strings(values: Iterable[Any] | None) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values or []:
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        if not trimmed or trimmed.lower() in seen:
            continue
        seen.add(trimmed.lower())
        out.append(trimmed)
    return out


def _normalize_audience(audience: Mapping[str, Any] | None) -> dict[str, Any]:
    if not isinstance(audience, Mapping) or audience.get("audience") != "slots":
        return {"type": "all", "slots": []}
    slots: list[int] = []
    for value in audience.get("slots") or []:
        slot = to_int(value, minimum=0)
        if slot is not None and slot not in slots:
            slots.append(slot)
    return {"type": "slots", "slots": slots}


def _summarize_participant(
    participant: Participant,
    index: int,
    presence: RealtimePresenceSnapshot | None,
    drop_in: DropInSnapshot | None,
) -> dict[str, Any]:
    owner_id = participant.owner_id
    entry = presence.entry_for(owner_id) if presence is not None else None
    base_status = normalize_status_token(participant.status) or "unknown"
    status = (normalize_status_token(entry.status) or base_status) if entry and entry.status else base_status
    role_stats = drop_in.role_stats(participant.role) if drop_in is not None and participant.role else None
    drop_in_summary = None
    if role_stats is not None and owner_id and role_stats.active_owner_id == owner_id:
        drop_in_summary = {
            "role": role_stats.role,
            "replacements": role_stats.replacements,
            "total_arrivals": role_stats.total_arrivals,
            "last_arrival_turn": role_stats.last_arrival_turn,
            "last_departure_turn": role_stats.last_departure_turn,
            "last_departure_cause": role_stats.last_departure_cause,
            "snapshot_turn": drop_in.turn,
        }
    return {
        "participant_id": participant.id or participant.hero_id,
        "slot_index": participant.slot_index if participant.slot_index is not None else index,
        "owner_id": owner_id,
        "role": participant.role or None,
        "hero_id": participant.hero_id,
        "hero_name": participant.hero_name,
        "status": status,
        "presence": (
            {
                "inactivity_strikes": entry.inactivity_strikes,
                "proxied_at_turn": entry.proxied_at_turn,
                "managed": entry.managed,
            }
            if entry is not None
            else None
        ),
        "stats": {
            "score": participant.score,
            "rating": participant.rating,
            "battles": participant.battles,
            "win_rate": participant.win_rate,
        },
        "drop_in": drop_in_summary,
    }


def _summarize_turn(record: Mapping[str, Any], roster: Sequence[Participant]) -> dict[str, Any]:
    slot_index = record.get("slot_index")
    slot_index = slot_index if isinstance(slot_index, int) and not isinstance(slot_index, bool) else None
    participant = find_participant_by_slot(roster, slot_index) if slot_index is not None else None
    return {
        "turn": to_int(record.get("turn")),
        "node_id": record.get("node_id"),
        "slot_index": slot_index,
        "action": record.get("action") or "continue",
        "next_node_id": record.get("next"),
        "prompt": {
            "text": record.get("prompt") or "",
            "audience": _normalize_audience(record.get("prompt_audience")),
        },
        "response": {
            "text": record.get("response") or "",
            "audience": _normalize_audience(record.get("response_audience")),
            "actors": _dedupe_strings(record.get("actors")),
        },
        "outcome": record.get("outcome") or "",
        "variables": _dedupe_strings(record.get("variables")),
        "actor": (
            {
                "owner_id": participant.owner_id,
                "role": participant.role or None,
                "hero_name": participant.hero_name,
            }
            if participant is not None
            else None
        ),
        "summary": copy.deepcopy(record.get("summary")) if isinstance(record.get("summary"), Mapping) else None,
    }


def _summarize_history(index: int, entry: Mapping[str, Any]) -> dict[str, Any]:
    content = entry.get("content")
    return {
        "index": index,
        "role": entry.get("role") or "assistant",
        "content": content if isinstance(content, str) else "",
        "public": bool(entry.get("public")),
        "include_in_ai": entry.get("include_in_ai") is not False,
        "audience": _normalize_audience({"audience": entry.get("audience"), "slots": entry.get("slots")}),
        "meta": copy.deepcopy(entry.get("meta")) if isinstance(entry.get("meta"), Mapping) else None,
    }


def build_battle_log_draft(
    *,
    game_id: str | None = None,
    session_id: str | None = None,
    game_name: str | None = None,
    result: str = "unknown",
    reason: str | None = None,
    logs: Sequence[TurnLogRecord | Mapping[str, Any]] = (),
    history_entries: Sequence[HistoryEntry | Mapping[str, Any]] = (),
    timeline_events: Sequence[Any] = (),
    participants: Sequence[Participant | Mapping[str, Any]] = (),
    realtime_presence: RealtimePresenceSnapshot | None = None,
    drop_in_snapshot: DropInSnapshot | None = None,
    win_count: int = 0,
    end_turn: int | None = None,
    ended_at_ms: int | None = None,
) -> BattleLogDraft:
    roster = coerce_participants(participants)
    participant_summaries = tuple(
        _summarize_participant(participant, index, realtime_presence, drop_in_snapshot)
        for index, participant in enumerate(roster)
    )
    turns = tuple(
        _summarize_turn(record, roster)
        for record in (_as_dict(item) for item in logs)
        if record is not None
    )
    history = tuple(
        _summarize_history(index, record)
        for index, record in enumerate(_as_dict(item) for item in history_entries)
        if record is not None
    )
    timeline = tuple(event.to_dict() for event in merge_timeline_events([], timeline_events))

    drop_in_meta = None
    if drop_in_snapshot is not None:
        drop_in_meta = {
            "turn": drop_in_snapshot.turn,
            "roles": [
                {
                    "role": stats.role or None,
                    "total_arrivals": stats.total_arrivals,
                    "replacements": stats.replacements,
                    "last_arrival_turn": stats.last_arrival_turn,
                    "last_departure_turn": stats.last_departure_turn,
                    "last_departure_cause": stats.last_departure_cause,
                    "active_owner_id": to_trimmed(stats.active_owner_id),
                }
                for stats in drop_in_snapshot.roles
            ],
        }

    ended_at = ended_at_ms if ended_at_ms is not None else now_ms()
    meta = BattleLogMeta(
        game_id=game_id,
        session_id=session_id,
        game_name=game_name,
        result=result,
        reason=reason,
        end_turn=to_int(end_turn),
        win_count=to_int(win_count) or 0,
        generated_at=datetime.fromtimestamp(ended_at / 1000, tz=timezone.utc).isoformat(),
        drop_in=drop_in_meta,
        timeline_event_count=len(timeline),
        turn_count=len(turns),
    )
    return BattleLogDraft(
        meta=meta,
        participants=copy.deepcopy(participant_summaries),
        turns=turns,
        history=history,
        timeline=timeline,
    )
