from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from .normalize import normalize_status_token, now_ms, to_trimmed
from .participants import derive_participant_owner_id
from .types import OwnerWarning, Participant, PresenceEntry, RealtimePresenceSnapshot, TimelineEvent, TurnCompletion

logger = logging.getLogger(__name__)

MAX_EVENT_LOG_SIZE = 50


@dataclass
class _OwnerState:
    owner_id: str
    status: str = "active"
    inactivity_strikes: int = 0
    last_participation_turn: int = 0
    last_participation_type: Optional[str] = None
    last_warning_turn: int = 0
    last_warning_reason: Optional[str] = None
    proxied_at_turn: Optional[int] = None


@dataclass
class RealtimePresenceManager:
    """In-memory presence tracker for realtime sessions.

    Each managed owner who is still pending when a turn completes gains an
    inactivity strike. Strikes below ``warning_limit`` produce ``warning``
    events; reaching the limit switches the owner to ``proxy``.
    """

    warning_limit: int = 3
    _turn: int = 0
    _pending: set[str] = field(default_factory=set)
    _managed: set[str] = field(default_factory=set)
    _owners: dict[str, _OwnerState] = field(default_factory=dict)
    _events: list[TimelineEvent] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.warning_limit < 1:
            self.warning_limit = 3

    def _ensure(self, owner_id: Any) -> _OwnerState | None:
        normalized = to_trimmed(owner_id)
        if normalized is None:
            return None
        if normalized not in self._owners:
            self._owners[normalized] = _OwnerState(owner_id=normalized)
        return self._owners[normalized]

    def get_snapshot(self) -> RealtimePresenceSnapshot:
        entries = tuple(
            PresenceEntry(
                owner_id=state.owner_id,
                status=state.status,
                inactivity_strikes=state.inactivity_strikes,
                proxied_at_turn=state.proxied_at_turn,
                managed=state.owner_id in self._managed,
            )
            for state in sorted(self._owners.values(), key=lambda item: item.owner_id)
        )
        return RealtimePresenceSnapshot(
            entries=entries,
            warning_limit=self.warning_limit,
            events=tuple(self._events[-MAX_EVENT_LOG_SIZE:]),
        )

    def reset(self) -> RealtimePresenceSnapshot:
        self._turn = 0
        self._pending = set()
        self._managed = set()
        self._owners = {}
        self._events = []
        return self.get_snapshot()

    def sync_participants(self, participants: Iterable[Participant | Mapping[str, Any]]) -> RealtimePresenceSnapshot:
        seen: set[str] = set()
        for participant in participants or []:
            state = self._ensure(derive_participant_owner_id(participant))
            if state is None:
                continue
            seen.add(state.owner_id)
            status = participant.status if isinstance(participant, Participant) else participant.get("status")
            state.status = normalize_status_token(status) or "unknown"
            if state.status == "proxy" and state.proxied_at_turn is None:
                state.proxied_at_turn = self._turn
        for owner_id in list(self._owners):
            if owner_id not in seen:
                del self._owners[owner_id]
                self._pending.discard(owner_id)
                self._managed.discard(owner_id)
        return self.get_snapshot()

    def set_managed_owners(self, owner_ids: Iterable[Any]) -> RealtimePresenceSnapshot:
        self._managed = set()
        for owner_id in owner_ids or []:
            state = self._ensure(owner_id)
            if state is not None:
                self._managed.add(state.owner_id)
        return self.get_snapshot()

    def begin_turn(self, turn_number: int, eligible_owner_ids: Iterable[Any]) -> RealtimePresenceSnapshot:
        self._turn = turn_number
        self._pending = {owner for owner in (to_trimmed(value) for value in eligible_owner_ids or []) if owner}
        return self.get_snapshot()

    def record_participation(self, owner_id: str, turn_number: int, *, type: str = "action") -> RealtimePresenceSnapshot:
        state = self._ensure(owner_id)
        if state is None:
            return self.get_snapshot()
        state.last_participation_turn = turn_number
        state.last_participation_type = type
        state.last_warning_reason = None
        state.last_warning_turn = 0
        state.inactivity_strikes = 0
        self._pending.discard(state.owner_id)
        if state.status != "proxy":
            state.status = "active"
        return self.get_snapshot()

    def complete_turn(
        self,
        turn_number: int,
        reason: Optional[str] = None,
        eligible_owner_ids: Iterable[Any] = (),
    ) -> TurnCompletion:
        self._turn = turn_number
        warnings: list[OwnerWarning] = []
        escalated: list[str] = []
        events: list[TimelineEvent] = []
        timestamp = now_ms()

        for owner_id in (to_trimmed(value) for value in eligible_owner_ids or []):
            if not owner_id or owner_id not in self._pending:
                continue
            self._pending.discard(owner_id)
            if self._managed and owner_id not in self._managed:
                continue
            state = self._ensure(owner_id)
            state.inactivity_strikes += 1
            state.last_warning_turn = turn_number
            state.last_warning_reason = reason

            if state.inactivity_strikes >= self.warning_limit:
                if state.status == "proxy":
                    continue
                state.status = "proxy"
                state.proxied_at_turn = turn_number
                escalated.append(owner_id)
                event_type = "proxy_escalated"
                remaining = 0
            else:
                remaining = max(self.warning_limit - state.inactivity_strikes, 0)
                warnings.append(
                    OwnerWarning(owner_id=owner_id, strike=state.inactivity_strikes, remaining=remaining, reason=reason)
                )
                event_type = "warning"

            events.append(
                TimelineEvent(
                    id=f"{event_type}:{owner_id}:{turn_number}:{state.inactivity_strikes}",
                    type=event_type,
                    owner_id=owner_id,
                    turn=turn_number,
                    timestamp=timestamp,
                    reason=reason,
                    strike=state.inactivity_strikes,
                    remaining=remaining,
                    limit=self.warning_limit,
                    status=state.status,
                )
            )

        if events:
            self._events.extend(events)
            del self._events[:-MAX_EVENT_LOG_SIZE]
        if escalated:
            logger.info("Turn %s escalated owners to proxy: %s", turn_number, ", ".join(escalated))

        return TurnCompletion(
            snapshot=self.get_snapshot(),
            events=tuple(events),
            warnings=tuple(warnings),
            escalated=tuple(escalated),
        )
