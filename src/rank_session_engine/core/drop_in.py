from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from .normalize import normalize_status_token, now_ms, to_trimmed
from .participants import coerce_participants
from .types import DropInRoleStats, DropInSnapshot, Participant

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "unassigned"


@dataclass(frozen=True)
class DropInParticipant:
    key: str
    owner_id: Optional[str]
    role: str
    hero_name: str
    status: str
    participant_id: Optional[str]
    slot_index: int


@dataclass(frozen=True)
class DropInArrival:
    participant: DropInParticipant
    turn: int
    timestamp: int
    replaced: Optional[DropInParticipant] = None
    arrival_order: int = 1
    replacements: int = 0
    last_departure_cause: Optional[str] = None


@dataclass(frozen=True)
class DropInDeparture:
    participant: DropInParticipant
    turn: int
    timestamp: int
    cause: str


@dataclass(frozen=True)
class DropInSyncResult:
    arrivals: tuple[DropInArrival, ...]
    departures: tuple[DropInDeparture, ...]
    snapshot: DropInSnapshot


@dataclass
class _RoleState:
    role: str
    total_arrivals: int = 0
    replacements: int = 0
    active: Optional[DropInParticipant] = None
    last_arrival_turn: Optional[int] = None
    last_departure_turn: Optional[int] = None
    last_departure_cause: Optional[str] = None


def _normalize_role(role: Any) -> str:
    return to_trimmed(role) if isinstance(role, str) and role.strip() else DEFAULT_ROLE


def departure_cause(status: str | None) -> str:
    token = normalize_status_token(status)
    if token == "defeated":
        return "role_defeated"
    if token == "spectating":
        return "role_spectating"
    if token == "proxy":
        return "async_proxy_rotation"
    if token == "pending":
        return "async_pending"
    return "async_rotation"


def _describe(participant: Participant, index: int, mode: str) -> DropInParticipant:
    role = _normalize_role(participant.role)
    key = participant.id or participant.hero_id or f"{role}:{index}"
    status = normalize_status_token(participant.status) or ("active" if mode == "realtime" else "proxy")
    return DropInParticipant(
        key=str(key),
        owner_id=participant.owner_id,
        role=role,
        hero_name=participant.hero_name or "",
        status=status,
        participant_id=participant.id or participant.hero_id,
        slot_index=index,
    )


@dataclass
class DropInQueueService:
    """Tracks per-role arrivals and replacements across roster syncs.

    The first sync only records a baseline; later syncs report any participant
    key that was not present before as an arrival.
    """

    _initialized: bool = False
    _participants: dict[str, DropInParticipant] = field(default_factory=dict)
    _roles: dict[str, _RoleState] = field(default_factory=dict)

    def _role_state(self, role: str) -> _RoleState:
        key = _normalize_role(role)
        if key not in self._roles:
            self._roles[key] = _RoleState(role=key)
        return self._roles[key]

    def get_snapshot(self, turn: int | None = None) -> DropInSnapshot:
        roles = [
            DropInRoleStats(
                role=state.role,
                total_arrivals=state.total_arrivals,
                replacements=state.replacements,
                last_arrival_turn=state.last_arrival_turn,
                last_departure_turn=state.last_departure_turn,
                last_departure_cause=state.last_departure_cause,
                active_owner_id=state.active.owner_id if state.active else None,
                active_hero_name=(state.active.hero_name or None) if state.active else None,
                active_slot_index=state.active.slot_index if state.active else None,
            )
            for state in self._roles.values()
        ]
        roles.sort(key=lambda stats: stats.role)
        return DropInSnapshot(turn=turn, roles=tuple(roles))

    def reset(self) -> DropInSnapshot:
        self._participants = {}
        self._roles = {}
        self._initialized = False
        return self.get_snapshot()

    def sync_participants(
        self,
        participants: Iterable[Participant | Mapping[str, Any]],
        *,
        turn_number: int | None = None,
        mode: str = "async",
    ) -> DropInSyncResult:
        turn = turn_number if isinstance(turn_number, int) else 0
        timestamp = now_ms()
        current: dict[str, DropInParticipant] = {}
        arrivals: list[DropInArrival] = []
        departures: list[DropInDeparture] = []
        handled: set[str] = set()

        for index, participant in enumerate(coerce_participants(participants)):
            info = _describe(participant, index, mode)
            current[info.key] = info
            stats = self._role_state(info.role)

            if info.key in self._participants:
                stats.active = info
                handled.add(info.key)
                continue

            replaced = stats.active if stats.active and stats.active.key != info.key else None
            if replaced is not None:
                handled.add(replaced.key)
                cause = departure_cause(replaced.status)
                departures.append(DropInDeparture(participant=replaced, turn=turn, timestamp=timestamp, cause=cause))
                stats.replacements += 1
                stats.last_departure_turn = turn
                stats.last_departure_cause = cause

            stats.total_arrivals += 1
            stats.active = info
            stats.last_arrival_turn = turn
            arrivals.append(
                DropInArrival(
                    participant=info,
                    turn=turn,
                    timestamp=timestamp,
                    replaced=replaced,
                    arrival_order=stats.total_arrivals,
                    replacements=stats.replacements,
                    last_departure_cause=stats.last_departure_cause,
                )
            )

        for key, info in self._participants.items():
            if key in current or key in handled:
                continue
            stats = self._role_state(info.role)
            if stats.active is not None and stats.active.key == key:
                stats.active = None
            cause = departure_cause(info.status)
            stats.last_departure_turn = turn
            stats.last_departure_cause = cause
            departures.append(DropInDeparture(participant=info, turn=turn, timestamp=timestamp, cause=cause))

        self._participants = current
        snapshot = self.get_snapshot(turn)
        if not self._initialized:
            self._initialized = True
            return DropInSyncResult(arrivals=(), departures=(), snapshot=snapshot)

        if arrivals or departures:
            logger.info(
                "Drop-in sync turn=%s arrivals=%d departures=%d", turn, len(arrivals), len(departures)
            )
        return DropInSyncResult(arrivals=tuple(arrivals), departures=tuple(departures), snapshot=snapshot)


def arrival_to_timeline_event(arrival: DropInArrival, *, mode: str = "async") -> dict[str, Any]:
    info = arrival.participant
    return {
        "id": f"drop_in_joined:{info.key}:{arrival.turn}",
        "type": "drop_in_joined",
        "ownerId": info.owner_id,
        "turn": arrival.turn,
        "timestamp": arrival.timestamp,
        "reason": "drop_in",
        "status": "active",
        "context": {
            "role": info.role,
            "heroName": info.hero_name or None,
            "slotIndex": info.slot_index,
            "mode": mode,
            "replacedOwnerId": arrival.replaced.owner_id if arrival.replaced else None,
            "arrivalOrder": arrival.arrival_order,
            "replacements": arrival.replacements,
            "lastDepartureCause": arrival.last_departure_cause,
        },
    }
