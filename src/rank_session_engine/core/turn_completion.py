from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from .participants import build_owner_display_map, derive_eligible_owner_ids, display_name, with_status
from .ports import NullUICallbacks, PersistenceCollaborators, RealtimeManagerPort, UICallbacks
from .state import RosterReplaced, SessionStateHolder, StatusNoticeAppended
from .timeline import build_log_entries_from_events, format_realtime_reason
from .types import ParticipantStatus, RealtimePresenceSnapshot, TurnCompletion

logger = logging.getLogger(__name__)

RecordTurnState = Callable[[int, str], Optional[Awaitable[None]]]
ApplySnapshot = Callable[[RealtimePresenceSnapshot], None]

_LOGGED_EVENT_TYPES = frozenset({"warning", "proxy_escalated"})


class RealtimeTurnCompletion:
    """Closes out realtime turns: strikes, warnings and proxy escalation."""

    def __init__(
        self,
        state: SessionStateHolder,
        persistence: PersistenceCollaborators,
        *,
        manager: RealtimeManagerPort | None = None,
        record_turn_state: RecordTurnState | None = None,
        apply_snapshot: ApplySnapshot | None = None,
        ui: UICallbacks | None = None,
    ):
        self._state = state
        self._persistence = persistence
        self.manager = manager
        self._record_turn_state = record_turn_state
        self._apply_snapshot = apply_snapshot
        self._ui = ui or NullUICallbacks()

    async def finalize_realtime_turn(self, reason: str | None = None) -> TurnCompletion | None:
        current = self._state.state
        if not current.realtime or self.manager is None:
            return None

        roster = list(current.participants)
        turn = current.turn
        result = self.manager.complete_turn(turn, reason, derive_eligible_owner_ids(roster))
        if result is None:
            return None

        if self._record_turn_state is not None:
            maybe = self._record_turn_state(turn, f"completed:{reason}" if reason else "completed")
            if maybe is not None:
                await maybe
        if self._apply_snapshot is not None:
            self._apply_snapshot(result.snapshot)

        owner_names = build_owner_display_map(roster)
        entries = build_log_entries_from_events(
            [event for event in result.events if event.type in _LOGGED_EVENT_TYPES and event.owner_id],
            owner_display_map=owner_names,
            default_turn=turn,
            default_mode="realtime",
        )
        if entries:
            self._ui.append_log(entries)
            try:
                await self._persistence.log_turn_entries(entries, turn)
            except Exception:
                logger.warning("Failed to log realtime warning entries for turn %s", turn, exc_info=True)

        if result.warnings:
            parts = []
            for warning in result.warnings:
                name = display_name(warning.owner_id, owner_names)
                remain = f" (남은 기회 {warning.remaining}회)" if warning.remaining > 0 else ""
                label = format_realtime_reason(warning.reason)
                suffix = f" – {label}" if label else ""
                parts.append(f"{name} 경고 {warning.strike}회{remain}{suffix}")
            self._state.dispatch(
                StatusNoticeAppended(f"경고: {', '.join(parts)} - \"다음\" 버튼을 눌러 참여해 주세요.")
            )

        escalated = [owner.strip() for owner in result.escalated if owner and owner.strip()]
        if escalated:
            patched, changed = with_status(self._state.state.participants, escalated, ParticipantStatus.PROXY)
            if changed:
                self._state.dispatch(RosterReplaced(tuple(patched)))
            reasons = {
                event.owner_id: format_realtime_reason(event.reason)
                for event in result.events
                if event.type == "proxy_escalated"
            }
            names = []
            for owner_id in escalated:
                name = display_name(owner_id, owner_names)
                label = reasons.get(owner_id)
                names.append(f"{name} ({label})" if label else name)
            self._state.dispatch(
                StatusNoticeAppended(
                    f"대역 전환: {', '.join(names)} – 3회 이상 응답하지 않아 대역으로 교체되었습니다."
                )
            )

        return result

    def record_realtime_participation(self, owner_id: str | None, type: str = "action") -> RealtimePresenceSnapshot | None:
        current = self._state.state
        if not current.realtime or not owner_id or self.manager is None:
            return None
        snapshot = self.manager.record_participation(owner_id, current.turn, type=type)
        if self._apply_snapshot is not None:
            self._apply_snapshot(snapshot)
        return snapshot

    def begin_turn(self, turn_number: int | None = None) -> RealtimePresenceSnapshot | None:
        current = self._state.state
        if not current.realtime or self.manager is None:
            return None
        snapshot = self.manager.begin_turn(
            turn_number if turn_number is not None else current.turn,
            derive_eligible_owner_ids(list(current.participants)),
        )
        if self._apply_snapshot is not None:
            self._apply_snapshot(snapshot)
        return snapshot
