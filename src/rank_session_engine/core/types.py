from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from .normalize import first_present, normalize_status_token, to_int, to_trimmed


class ParticipantStatus:
    ALIVE = "alive"
    PROXY = "proxy"
    SPECTATING = "spectating"
    PENDING = "pending"
    DEFEATED = "defeated"


class SessionStatus:
    ACTIVE = "active"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"


class EdgeAction:
    CONTINUE = "continue"
    WIN = "win"
    LOSE = "lose"
    DRAW = "draw"


USER_SLOT_TYPES = frozenset({"user_action", "manual"})


def normalize_participant_status(value: Any) -> str:
    token = normalize_status_token(value)
    if token is None or token == "active":
        return ParticipantStatus.ALIVE
    return token


@dataclass(frozen=True)
class Participant:
    owner_id: Optional[str]
    hero_id: Optional[str]
    role: str = ""
    slot_index: Optional[int] = None
    status: str = ParticipantStatus.ALIVE
    score: int = 0
    rating: int = 0
    battles: int = 0
    win_rate: Optional[float] = None
    hero_name: Optional[str] = None
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, record: dict[str, Any], index: int | None = None) -> "Participant":
        owner = record.get("owner")
        hero = record.get("hero")
        owner_id = first_present(record, "owner_id", "ownerId", "ownerID")
        if owner_id is None and isinstance(owner, dict):
            owner_id = owner.get("id")
        hero_id = first_present(record, "hero_id", "heroId", "heroID")
        hero_name = first_present(record, "hero_name", "heroName", "display_name", "name")
        if isinstance(hero, dict):
            hero_id = hero_id if hero_id is not None else hero.get("id")
            hero_name = hero.get("name") or hero_name
        slot_index = to_int(first_present(record, "slot_index", "slotIndex", "slot_no"), minimum=0)
        if slot_index is None and index is not None:
            slot_index = index
        win_rate = first_present(record, "win_rate", "winRate")
        return cls(
            owner_id=to_trimmed(owner_id),
            hero_id=to_trimmed(hero_id),
            role=(to_trimmed(record.get("role")) or ""),
            slot_index=slot_index,
            status=normalize_participant_status(record.get("status")),
            score=to_int(record.get("score")) or 0,
            rating=to_int(record.get("rating")) or 0,
            battles=to_int(record.get("battles")) or 0,
            win_rate=float(win_rate) if isinstance(win_rate, (int, float)) else None,
            hero_name=to_trimmed(hero_name),
            id=to_trimmed(record.get("id")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class HeroSlot:
    slot_index: int
    role: str = ""
    name: str = ""
    hero_id: Optional[str] = None
    owner_id: Optional[str] = None


@dataclass(frozen=True)
class Node:
    id: str
    slot_type: str = "ai"
    slot_no: Optional[int] = None
    visible_slots: tuple[int, ...] = ()
    is_start: bool = False
    template: str = ""

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> "Node":
        options = record.get("options") or {}
        visible = options.get("visible_slots") if isinstance(options, dict) else None
        visible_slots = tuple(
            slot for slot in (to_int(value) for value in (visible or [])) if slot is not None
        )
        return cls(
            id=str(record.get("id")),
            slot_type=str(record.get("slot_type") or "ai"),
            slot_no=to_int(record.get("slot_no")),
            visible_slots=visible_slots,
            is_start=bool(record.get("is_start")),
            template=str(record.get("template") or ""),
        )

    @property
    def is_user_action(self) -> bool:
        return self.slot_type in USER_SLOT_TYPES


@dataclass(frozen=True)
class Edge:
    from_id: Any
    to: Any
    action: str = EdgeAction.CONTINUE
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> "Edge":
        data = record.get("data") or {}
        action = data.get("action") if isinstance(data, dict) else None
        return cls(
            from_id=record.get("from"),
            to=record.get("to"),
            action=str(action or EdgeAction.CONTINUE),
            data=dict(data) if isinstance(data, dict) else {},
        )

    def leaves(self, node_id: Any) -> bool:
        if node_id is None or self.from_id is None:
            return False
        return self.from_id == node_id or str(self.from_id) == str(node_id)


@dataclass(frozen=True)
class Graph:
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> "Graph":
        return cls(
            nodes=tuple(Node.from_dict(n) for n in record.get("nodes") or []),
            edges=tuple(Edge.from_dict(e) for e in record.get("edges") or []),
        )

    def find_node(self, node_id: Any) -> Node | None:
        if node_id is None:
            return None
        for node in self.nodes:
            if node.id == str(node_id):
                return node
        return None

    def outgoing(self, node_id: Any) -> list[Edge]:
        return [edge for edge in self.edges if edge.leaves(node_id)]

    def start_node(self) -> Node | None:
        for node in self.nodes:
            if node.is_start:
                return node
        return self.nodes[0] if self.nodes else None


@dataclass(frozen=True)
class ActorContext:
    slot_index: int
    hero_slot: Optional[HeroSlot]
    participant: Optional[Participant]

    @property
    def owner_id(self) -> str | None:
        return self.participant.owner_id if self.participant else None

    @property
    def role(self) -> str | None:
        if self.participant and self.participant.role:
            return self.participant.role
        if self.hero_slot and self.hero_slot.role:
            return self.hero_slot.role
        return None


@dataclass(frozen=True)
class SlotBinding:
    slot_index: int
    visible_slots: tuple[int, ...] = ()
    has_limited_audience: bool = False
    prompt_audience: dict[str, Any] = field(default_factory=lambda: {"audience": "all"})
    response_audience: dict[str, Any] = field(default_factory=lambda: {"audience": "all"})


@dataclass(frozen=True)
class TimelineEvent:
    id: str
    type: str
    owner_id: Optional[str] = None
    turn: Optional[int] = None
    timestamp: int = 0
    reason: Optional[str] = None
    strike: Optional[int] = None
    remaining: Optional[int] = None
    limit: Optional[int] = None
    status: Optional[str] = None
    context: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(asdict(self))


@dataclass(frozen=True)
class PresenceEntry:
    owner_id: str
    status: str = "active"
    inactivity_strikes: int = 0
    proxied_at_turn: Optional[int] = None
    managed: bool = False


@dataclass(frozen=True)
class RealtimePresenceSnapshot:
    entries: tuple[PresenceEntry, ...] = ()
    warning_limit: int = 3
    events: tuple[TimelineEvent, ...] = ()

    def entry_for(self, owner_id: str | None) -> PresenceEntry | None:
        if not owner_id:
            return None
        for entry in self.entries:
            if entry.owner_id == owner_id:
                return entry
        return None


@dataclass(frozen=True)
class OwnerWarning:
    owner_id: str
    strike: int
    remaining: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class TurnCompletion:
    snapshot: RealtimePresenceSnapshot
    events: tuple[TimelineEvent, ...] = ()
    warnings: tuple[OwnerWarning, ...] = ()
    escalated: tuple[str, ...] = ()


@dataclass(frozen=True)
class DropInRoleStats:
    role: str
    total_arrivals: int = 0
    replacements: int = 0
    last_arrival_turn: Optional[int] = None
    last_departure_turn: Optional[int] = None
    last_departure_cause: Optional[str] = None
    active_owner_id: Optional[str] = None
    active_hero_name: Optional[str] = None
    active_slot_index: Optional[int] = None


@dataclass(frozen=True)
class DropInSnapshot:
    turn: Optional[int] = None
    roles: tuple[DropInRoleStats, ...] = ()

    def role_stats(self, role: str | None) -> DropInRoleStats | None:
        for stats in self.roles:
            if stats.role == role:
                return stats
        return None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HistoryEntry:
    role: str
    content: str
    public: bool = True
    include_in_ai: bool = True
    audience: str = "all"
    slots: tuple[int, ...] = ()
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(asdict(self))


@dataclass(frozen=True)
class TurnLogRecord:
    turn: int
    node_id: Optional[str]
    slot_index: Optional[int]
    prompt: str
    response: str
    visible_response: str
    outcome: str
    variables: tuple[str, ...]
    next: Optional[str]
    action: str
    actors: tuple[str, ...] = ()
    prompt_audience: Optional[dict[str, Any]] = None
    response_audience: Optional[dict[str, Any]] = None
    summary: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class ParsedOutcome:
    last_line: str = ""
    variables: tuple[str, ...] = ()
    actors: tuple[str, ...] = ()


@dataclass(frozen=True)
class CompiledPrompt:
    text: str
    picked_slot: Any = None


@dataclass(frozen=True)
class GenerationRequest:
    api_key: str
    system: str
    prompt: str
    api_version: str
    session_id: str
    game_id: Optional[str]
    response_role: str
    history: list[dict[str, Any]]
    gemini_mode: Optional[str] = None
    gemini_model: Optional[str] = None
    prompt_role: str = "system"
    response_public: bool = True


@dataclass(frozen=True)
class GenerationResponse:
    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass(frozen=True)
class LedgerRecordResult:
    changed: bool = False
    completed: bool = False


@dataclass(frozen=True)
class RoutingContext:
    turn: int
    history_user_text: str
    history_ai_text: str
    visited_slot_ids: frozenset[Any]
    participants_status: dict[str, str]
    active_global_names: tuple[str, ...]
    active_local_names: tuple[str, ...]
    current_role: Optional[str]
    brawl_enabled: bool
    win_count: int
    end_triggered: bool


@dataclass(frozen=True)
class SessionInfo:
    id: str
    status: str = SessionStatus.ACTIVE
    created_at: Optional[str] = None
    reused: bool = False


@dataclass(frozen=True)
class SessionRow:
    id: str
    status: str = SessionStatus.ACTIVE
    owner_id: Optional[str] = None
    created_at: Optional[str] = None
    game_id: Optional[str] = None

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> "SessionRow | None":
        session_id = to_trimmed(first_present(record, "id", "session_id", "sessionId"))
        if not session_id:
            return None
        owner = record.get("owner")
        owner_id = first_present(record, "owner_id", "ownerId", "ownerID")
        if owner_id is None and isinstance(owner, dict):
            owner_id = owner.get("id")
        status = to_trimmed(record.get("status"))
        created_at = first_present(record, "created_at", "createdAt")
        return cls(
            id=session_id,
            status=status.lower() if status else SessionStatus.ACTIVE,
            owner_id=to_trimmed(owner_id),
            created_at=str(created_at) if created_at is not None else None,
            game_id=to_trimmed(first_present(record, "game_id", "gameId")),
        )


@dataclass(frozen=True)
class OutcomeInput:
    response_text: str
    prompt_text: str
    prompt_entry: Optional[HistoryEntry]
    response_entry: Optional[HistoryEntry]
    node: Node
    slot_binding: SlotBinding
    actor_context: ActorContext
    turn: int
    session_info: Optional[SessionInfo] = None
    game_id: Optional[str] = None
    server_payload: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class OutcomeResult:
    finalized: bool


@dataclass(frozen=True)
class TurnResult:
    status: str
    message: Optional[str] = None
    finalized: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class BattleLogMeta:
    game_id: Optional[str]
    session_id: Optional[str]
    game_name: Optional[str]
    result: str
    reason: Optional[str]
    end_turn: Optional[int]
    win_count: int
    generated_at: str
    drop_in: Optional[dict[str, Any]]
    timeline_event_count: int
    turn_count: int


@dataclass(frozen=True)
class BattleLogDraft:
    meta: BattleLogMeta
    participants: tuple[dict[str, Any], ...]
    turns: tuple[dict[str, Any], ...]
    history: tuple[dict[str, Any], ...]
    timeline: tuple[dict[str, Any], ...]

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(
            {
                "meta": asdict(self.meta),
                "participants": list(self.participants),
                "turns": list(self.turns),
                "history": list(self.history),
                "timeline": list(self.timeline),
            }
        )
