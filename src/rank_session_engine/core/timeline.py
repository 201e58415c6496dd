"""Timeline event normalization, merging and log-line formatting."""

from __future__ import annotations

import copy
from dataclasses import fields, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from .normalize import first_present, normalize_status_token, now_ms, to_int, to_trimmed
from .participants import display_name
from .types import RealtimePresenceSnapshot, TimelineEvent

DEFAULT_EVENT_TYPE = "event"

_REASON_LABELS = {
    "timeout": "시간 초과",
    "consensus": "합의 미응답",
    "manual": "수동 진행 미완료",
    "ai": "자동 진행",
    "inactivity": "응답 없음",
}

_API_KEY_SOURCE_LABELS = {
    "user_input": "사용자 입력",
    "auto_rotation": "자동 교체",
    "pool_rotation": "키 풀 교체",
    "cleared": "API 키 제거",
    "match_ready_client": "매치 준비",
    "auto_match_progress": "자동 매칭",
}


def format_realtime_reason(reason: Any) -> str | None:
    token = to_trimmed(reason)
    if not token:
        return None
    return _REASON_LABELS.get(token.lower())


def format_api_key_pool_source(source: Any) -> str:
    token = source.strip().lower() if isinstance(source, str) else ""
    if not token:
        return "API 키 교체"
    return _API_KEY_SOURCE_LABELS.get(token, token)


def _finite(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _number_label(value: float) -> str:
    return str(int(value)) if value == int(value) else str(value)


def _sanitize_mapping(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, Mapping):
        return None
    return copy.deepcopy(dict(value))


def _parse_timestamp(value: Any) -> int | None:
    numeric = to_int(value)
    if numeric is not None and numeric > 0:
        return numeric
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None


def normalize_timeline_event(
    event: Any,
    *,
    default_turn: int | None = None,
    default_type: str = DEFAULT_EVENT_TYPE,
) -> TimelineEvent | None:
    if isinstance(event, TimelineEvent):
        return event
    if not isinstance(event, Mapping):
        return None
    record = dict(event)

    raw_type = next(
        (value.strip() for value in (record.get("type"), record.get("eventType"), record.get("event_type"), record.get("action"))
         if isinstance(value, str) and value.strip()),
        "",
    )
    event_type = raw_type or default_type
    if not event_type:
        return None

    owner_id = to_trimmed(first_present(record, "ownerId", "owner_id", "ownerID"))
    if owner_id is None and isinstance(record.get("owner"), str):
        owner_id = to_trimmed(record["owner"])

    turn = to_int(record.get("turn"))
    if turn is None:
        turn = to_int(default_turn)

    timestamp = _parse_timestamp(record.get("timestamp")) or now_ms()

    reason = next(
        (value for value in (record.get("reason"), record.get("reasonCode")) if isinstance(value, str)),
        None,
    )
    base_id = next(
        (value.strip() for value in (record.get("id"), record.get("event_id"), record.get("eventId"))
         if isinstance(value, str) and value.strip()),
        None,
    )
    event_id = base_id or f"{event_type}:{owner_id or 'unknown'}:{turn if turn is not None else 'na'}:{timestamp}"

    return TimelineEvent(
        id=event_id,
        type=event_type,
        owner_id=owner_id,
        turn=turn,
        timestamp=timestamp,
        reason=reason,
        strike=to_int(record.get("strike")),
        remaining=to_int(record.get("remaining")),
        limit=to_int(record.get("limit")),
        status=normalize_status_token(record.get("status")),
        context=_sanitize_mapping(record.get("context")),
        metadata=_sanitize_mapping(first_present(record, "metadata", "meta")),
    )


def timeline_event_key(event: TimelineEvent) -> str:
    if event.id:
        return f"id:{event.id}"
    turn = event.turn if event.turn is not None else "na"
    return f"{event.type or DEFAULT_EVENT_TYPE}:{event.owner_id or 'unknown'}:{turn}:{event.timestamp}"


def _overlay(existing: TimelineEvent, incoming: TimelineEvent) -> TimelineEvent:
    changes = {
        f.name: getattr(incoming, f.name)
        for f in fields(incoming)
        if getattr(incoming, f.name) is not None
    }
    return replace(existing, **changes)


def merge_timeline_events(
    existing: Iterable[TimelineEvent] | None,
    incoming: Iterable[Any] | None,
    *,
    default_turn: int | None = None,
) -> list[TimelineEvent]:
    """Merge ``incoming`` into ``existing`` keyed by event id.

    Re-delivered events replace their earlier copy instead of being appended,
    and the result is ordered by timestamp regardless of arrival order.
    """
    merged: dict[str, TimelineEvent] = {}
    for event in existing or []:
        merged[timeline_event_key(event)] = event
    for candidate in incoming or []:
        normalized = normalize_timeline_event(candidate, default_turn=default_turn)
        if normalized is None:
            continue
        key = timeline_event_key(normalized)
        previous = merged.get(key)
        merged[key] = _overlay(previous, normalized) if previous is not None else normalized
    return sorted(merged.values(), key=lambda event: event.timestamp)


def append_snapshot_events(
    existing: Iterable[TimelineEvent] | None,
    snapshot: RealtimePresenceSnapshot | None,
) -> list[TimelineEvent]:
    if snapshot is None or not snapshot.events:
        return list(existing or [])
    return merge_timeline_events(existing, snapshot.events)


def _warning_line(name: str, event: TimelineEvent, reason_label: str | None) -> str:
    strike = f"{event.strike}회" if event.strike is not None else "1회"
    remaining = f" (남은 기회 {event.remaining}회)" if event.remaining else ""
    suffix = f" – {reason_label}" if reason_label else ""
    return f"⚠️ {name} 경고 {strike}{remaining}{suffix}"


def _escalation_line(name: str, event: TimelineEvent, reason_label: str | None) -> str:
    strike = f" (경고 {event.strike}회 누적)" if event.strike is not None else ""
    suffix = f" – {reason_label}" if reason_label else ""
    return f"🚨 {name} 대역 전환{strike}{suffix}"


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _matching_line(matching: Mapping[str, Any]) -> str:
    label = "난입 매칭" if matching.get("matchType") == "drop_in" else "매칭"
    target = matching.get("dropInTarget") if isinstance(matching.get("dropInTarget"), Mapping) else {}
    meta = matching.get("dropInMeta") if isinstance(matching.get("dropInMeta"), Mapping) else {}
    details = []
    if matching.get("matchCode"):
        details.append(f"코드 {matching['matchCode']}")
    if target.get("role"):
        details.append(f"{target['role']} 슬롯")
    if target.get("roomCode"):
        details.append(f"룸 {target['roomCode']}")
    gap = _finite(target.get("scoreDifference"))
    if gap:
        details.append(f"점수차 ±{abs(round(gap))}")
    queue_size = _finite(meta.get("queueSize"))
    if queue_size is not None and queue_size >= 0:
        details.append(f"큐 대기 {_number_label(queue_size)}명")
    rooms = _finite(meta.get("roomsConsidered"))
    if rooms is not None and rooms > 0:
        details.append(f"검토 룸 {_number_label(rooms)}개")
    summary = ", ".join(details) if details else "백엔드 매칭 요약이 동기화되었습니다."
    return f"🎯 {label} 정보: {summary}"


def _api_key_line(pool: Mapping[str, Any]) -> str:
    source_label = format_api_key_pool_source(pool.get("source"))
    provider_label = f" ({pool['provider']})" if pool.get("provider") else ""
    new_label = f"새 키 {pool['newSample']}" if pool.get("newSample") else "API 키 업데이트"
    replaced_label = f" → 교체: {pool['replacedSample']}" if pool.get("replacedSample") else ""
    return f"🔑 {source_label}{provider_label} {new_label}{replaced_label}"


def _event_content(event: TimelineEvent, name: str, mode: str | None) -> str:
    context = event.context or {}
    metadata = event.metadata or {}
    reason_label = format_realtime_reason(event.reason)
    if event.type == "warning":
        return _warning_line(name, event, reason_label)
    if event.type == "proxy_escalated":
        return _escalation_line(name, event, reason_label)
    if event.type == "drop_in_joined":
        parts = [part for part in (_text(context.get("role")), _text(context.get("heroName"))) if part]
        detail = f" ({' · '.join(parts)})" if parts else ""
        if mode == "async":
            return f"🤖 대역 교체: {name}{detail}"
        return f"✨ 난입 합류: {name}{detail}"
    if event.type == "turn_timeout":
        if mode == "async":
            return "⏰ 제한시간 만료 – 대역이 턴을 마무리합니다."
        return "⏰ 제한시간 만료 – 턴을 자동으로 종료합니다."
    if event.type == "consensus_reached":
        count = _finite(context.get("consensusCount"))
        threshold = _finite(context.get("threshold"))
        if count is not None and threshold is not None and threshold > 0:
            return f"✅ {_number_label(count)}/{_number_label(threshold)} 동의로 턴을 종료합니다."
        return "✅ 동의가 충족되어 턴을 종료합니다."
    if event.type == "api_key_pool_replaced":
        pool = metadata.get("apiKeyPool")
        return _api_key_line(pool if isinstance(pool, Mapping) else {})
    if event.type == "drop_in_matching_context":
        matching = metadata.get("matching")
        return _matching_line(matching if isinstance(matching, Mapping) else {})
    return f"ℹ️ {name} 이벤트: {event.type}"


def build_log_entry_from_event(
    event: Any,
    *,
    owner_display_map: Mapping[str, str] | None = None,
    default_turn: int | None = None,
    default_mode: str = "realtime",
) -> dict[str, Any] | None:
    normalized = normalize_timeline_event(event, default_turn=default_turn)
    if normalized is None:
        return None
    turn = normalized.turn if normalized.turn is not None else default_turn
    context = normalized.context or {}
    mode = context.get("mode") if isinstance(context.get("mode"), str) else default_mode
    name = _text(context.get("actorLabel")) or display_name(normalized.owner_id, owner_display_map)
    return {
        "role": "system",
        "content": _event_content(normalized, name, mode),
        "public": True,
        "visibility": "public",
        "extra": {
            "eventType": normalized.type,
            "eventId": normalized.id,
            "ownerId": normalized.owner_id,
            "reason": normalized.reason,
            "strike": normalized.strike,
            "remaining": normalized.remaining,
            "limit": normalized.limit,
            "status": normalized.status,
            "turn": turn,
            "timestamp": normalized.timestamp,
            "mode": mode,
            "context": copy.deepcopy(normalized.context),
            "metadata": copy.deepcopy(normalized.metadata),
        },
    }


def build_log_entries_from_events(
    events: Sequence[Any],
    *,
    owner_display_map: Mapping[str, str] | None = None,
    default_turn: int | None = None,
    default_mode: str = "realtime",
) -> list[dict[str, Any]]:
    entries = []
    for event in events or []:
        entry = build_log_entry_from_event(
            event,
            owner_display_map=owner_display_map,
            default_turn=default_turn,
            default_mode=default_mode,
        )
        if entry is not None:
            entries.append(entry)
    return entries


def map_timeline_event_to_row(
    event: Any,
    *,
    session_id: str | None = None,
    game_id: str | None = None,
) -> dict[str, Any] | None:
    normalized = normalize_timeline_event(event)
    if normalized is None:
        return None
    return {
        "session_id": session_id,
        "game_id": game_id,
        "event_id": normalized.id,
        "event_type": normalized.type,
        "owner_id": normalized.owner_id,
        "reason": normalized.reason,
        "strike": normalized.strike,
        "remaining": normalized.remaining,
        "limit": normalized.limit,
        "status": normalized.status,
        "turn": normalized.turn,
        "event_timestamp": datetime.fromtimestamp(normalized.timestamp / 1000, tz=timezone.utc),
        "context": normalized.context,
        "metadata": normalized.metadata,
    }
