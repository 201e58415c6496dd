from __future__ import annotations

from rank_session_engine.core.timeline import (
    build_log_entries_from_events,
    build_log_entry_from_event,
    format_realtime_reason,
    map_timeline_event_to_row,
    merge_timeline_events,
    normalize_timeline_event,
)
from rank_session_engine.core.types import TimelineEvent


def test_reason_labels():
    assert format_realtime_reason("timeout") == "시간 초과"
    assert format_realtime_reason("consensus") == "합의 미응답"
    assert format_realtime_reason("ai") == "자동 진행"
    assert format_realtime_reason(" Inactivity ") == "응답 없음"
    assert format_realtime_reason("something-else") is None
    assert format_realtime_reason(None) is None


def test_normalize_accepts_camel_case_and_iso_timestamp():
    event = normalize_timeline_event(
        {
            "eventType": "warning",
            "ownerId": " u1 ",
            "turn": "3",
            "timestamp": "2024-01-01T00:00:00Z",
            "strike": 1,
            "remaining": 2,
            "limit": 3,
        }
    )
    assert event.type == "warning"
    assert event.owner_id == "u1"
    assert event.turn == 3
    assert event.timestamp == 1704067200000
    assert event.id == "warning:u1:3:1704067200000"


def test_normalize_rejects_non_mappings():
    assert normalize_timeline_event("warning") is None
    assert normalize_timeline_event(None) is None


def test_merge_is_keyed_by_id_and_sorted_by_timestamp():
    first = TimelineEvent(id="b", type="warning", owner_id="u1", timestamp=200, strike=1)
    second = TimelineEvent(id="a", type="warning", owner_id="u2", timestamp=100)
    merged = merge_timeline_events([first], [second, {"id": "b", "type": "warning", "timestamp": 200, "strike": 2}])
    assert [event.id for event in merged] == ["a", "b"]
    assert merged[1].strike == 2
    assert merged[1].owner_id == "u1"

    again = merge_timeline_events(merged, [second])
    assert len(again) == 2


def test_warning_entry_text_and_extra():
    entry = build_log_entry_from_event(
        {
            "id": "warning:u1:2:1",
            "type": "warning",
            "ownerId": "u1",
            "turn": 2,
            "strike": 1,
            "remaining": 2,
            "reason": "timeout",
            "timestamp": 1000,
        },
        owner_display_map={"u1": "Aria"},
    )
    assert entry["role"] == "system"
    assert entry["public"] is True
    assert entry["content"] == "⚠️ Aria 경고 1회 (남은 기회 2회) – 시간 초과"
    assert entry["extra"]["eventType"] == "warning"
    assert entry["extra"]["eventId"] == "warning:u1:2:1"


def test_escalation_and_unknown_event_lines():
    entries = build_log_entries_from_events(
        [
            {"id": "p", "type": "proxy_escalated", "ownerId": "u1", "strike": 3, "reason": "inactivity", "timestamp": 1},
            {"id": "x", "type": "mystery", "ownerId": "abcdefgh", "timestamp": 2},
            "garbage",
        ]
    )
    assert entries[0]["content"] == "🚨 플레이어 u1 대역 전환 (경고 3회 누적) – 응답 없음"
    assert entries[1]["content"] == "ℹ️ 플레이어 abcdef 이벤트: mystery"
    assert len(entries) == 2


def test_row_mapping_uses_aware_timestamp():
    row = map_timeline_event_to_row(
        {"id": "e1", "type": "turn_timeout", "timestamp": 1704067200000, "context": {"k": 1}},
        session_id="s1",
        game_id="g1",
    )
    assert row["event_id"] == "e1"
    assert row["session_id"] == "s1"
    assert row["event_timestamp"].tzinfo is not None
    assert row["event_timestamp"].year == 2024
    assert row["context"] == {"k": 1}


def _content(event, **kwargs):
    return build_log_entry_from_event({"timestamp": 1, **event}, **kwargs)["content"]


def test_drop_in_line_depends_on_mode_and_actor_label():
    joined = {"id": "d1", "type": "drop_in_joined", "ownerId": "u3", "context": {"role": "defense", "heroName": "Cyd"}}
    assert _content(joined, owner_display_map={"u3": "Cyd"}) == "✨ 난입 합류: Cyd (defense · Cyd)"
    assert _content(joined, owner_display_map={"u3": "Cyd"}, default_mode="async") == "🤖 대역 교체: Cyd (defense · Cyd)"

    labelled = {**joined, "context": {"mode": "async", "actorLabel": " 관리자 "}}
    assert _content(labelled) == "🤖 대역 교체: 관리자"


def test_turn_timeout_and_consensus_lines():
    assert _content({"type": "turn_timeout"}) == "⏰ 제한시간 만료 – 턴을 자동으로 종료합니다."
    assert _content({"type": "turn_timeout", "context": {"mode": "async"}}) == "⏰ 제한시간 만료 – 대역이 턴을 마무리합니다."

    reached = {"type": "consensus_reached", "context": {"consensusCount": 2, "threshold": "3", "eligibleCount": 4}}
    assert _content(reached) == "✅ 2/3 동의로 턴을 종료합니다."
    assert _content({"type": "consensus_reached", "context": {"consensusCount": 2}}) == "✅ 동의가 충족되어 턴을 종료합니다."


def test_api_key_pool_line_reads_pool_metadata():
    event = {
        "type": "api_key_pool_replaced",
        "metadata": {
            "apiKeyPool": {"source": "pool_rotation", "provider": "gemini", "newSample": "AIza…1f", "replacedSample": "AIza…9c"}
        },
    }
    assert _content(event) == "🔑 키 풀 교체 (gemini) 새 키 AIza…1f → 교체: AIza…9c"
    assert _content({"type": "api_key_pool_replaced"}) == "🔑 API 키 교체 API 키 업데이트"
    assert _content({"type": "api_key_pool_replaced", "metadata": {"apiKeyPool": {"source": "Vault"}}}) == (
        "🔑 vault API 키 업데이트"
    )


def test_matching_context_line_reads_matching_metadata():
    event = {
        "type": "drop_in_matching_context",
        "metadata": {
            "matching": {
                "matchType": "drop_in",
                "matchCode": "AB12",
                "dropInTarget": {"role": "defense", "roomCode": "R-7", "scoreDifference": -41.6},
                "dropInMeta": {"queueSize": 0, "roomsConsidered": 3},
            }
        },
    }
    assert _content(event) == "🎯 난입 매칭 정보: 코드 AB12, defense 슬롯, 룸 R-7, 점수차 ±42, 큐 대기 0명, 검토 룸 3개"
    assert _content({"type": "drop_in_matching_context"}) == "🎯 매칭 정보: 백엔드 매칭 요약이 동기화되었습니다."
