"""Session state value object and its transition function.

Every change to a running session goes through :func:`apply_turn`, which
returns a fresh :class:`SessionState`. :class:`SessionStateHolder` owns the
current value and the compare-and-set guard used by finalization.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional, Union

from .normalize import unique
from .types import Participant, SessionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionState:
    session_id: Optional[str] = None
    game_id: Optional[str] = None
    status: str = SessionStatus.ACTIVE
    turn: int = 1
    current_node_id: Optional[str] = None
    preflight: bool = True
    realtime: bool = False
    brawl_enabled: bool = False
    end_condition_variable: Optional[str] = None
    win_count: int = 0
    api_version_lock: Optional[str] = None
    finalized: bool = False
    finalize_reason: Optional[str] = None
    result: Optional[str] = None
    voided: bool = False
    void_reason: Optional[str] = None
    status_message: str = ""
    participants: tuple[Participant, ...] = ()
    active_global_names: tuple[str, ...] = ()
    active_local_names: tuple[str, ...] = ()
    visited_slot_ids: frozenset[str] = frozenset()
    logged_turns: frozenset[int] = frozenset()
    ledger: Any = None
    outcome_snapshot: Any = None


@dataclass(frozen=True)
class SessionBooted:
    session_id: str
    start_node_id: Optional[str]
    participants: tuple[Participant, ...] = ()
    game_id: Optional[str] = None
    realtime: bool = False
    brawl_enabled: bool = False
    end_condition_variable: Optional[str] = None
    ledger: Any = None


@dataclass(frozen=True)
class TurnAdvanced:
    next_node_id: Optional[str]
    visited_node_id: Optional[str] = None


@dataclass(frozen=True)
class WinRecorded:
    pass


@dataclass(frozen=True)
class SessionFinalized:
    reason: str
    result: Optional[str] = None


@dataclass(frozen=True)
class SessionVoided:
    message: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class ApiVersionPinned:
    version: str


@dataclass(frozen=True)
class StatusChanged:
    message: str


@dataclass(frozen=True)
class StatusNoticeAppended:
    message: str


@dataclass(frozen=True)
class VariablesActivated:
    global_names: tuple[str, ...] = ()
    local_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class TurnLogged:
    turn: int


@dataclass(frozen=True)
class RosterReplaced:
    participants: tuple[Participant, ...]


@dataclass(frozen=True)
class OutcomeSnapshotChanged:
    snapshot: Any


@dataclass(frozen=True)
class LedgerAttached:
    ledger: Any


SessionEvent = Union[
    SessionBooted,
    TurnAdvanced,
    WinRecorded,
    SessionFinalized,
    SessionVoided,
    ApiVersionPinned,
    StatusChanged,
    StatusNoticeAppended,
    VariablesActivated,
    TurnLogged,
    RosterReplaced,
    OutcomeSnapshotChanged,
    LedgerAttached,
]


def append_status_notice(current: str, notice: str) -> str:
    if not notice:
        return current
    if not current:
        return notice
    if notice in current:
        return current
    return f"{current}\n{notice}"


def apply_turn(state: SessionState, event: SessionEvent) -> SessionState:
    if isinstance(event, SessionBooted):
        return SessionState(
            session_id=event.session_id,
            game_id=event.game_id,
            current_node_id=event.start_node_id,
            preflight=False,
            realtime=event.realtime,
            brawl_enabled=event.brawl_enabled,
            end_condition_variable=event.end_condition_variable,
            participants=tuple(event.participants),
            ledger=event.ledger,
        )
    if isinstance(event, TurnAdvanced):
        visited = state.visited_slot_ids
        if event.visited_node_id is not None:
            visited = visited | {str(event.visited_node_id)}
        return replace(
            state,
            turn=state.turn + 1,
            current_node_id=event.next_node_id,
            visited_slot_ids=visited,
        )
    if isinstance(event, WinRecorded):
        return replace(state, win_count=state.win_count + 1)
    if isinstance(event, SessionFinalized):
        return replace(
            state,
            status=SessionStatus.FINALIZED,
            finalized=True,
            finalize_reason=event.reason,
            result=event.result,
            current_node_id=None,
        )
    if isinstance(event, SessionVoided):
        return replace(
            state,
            voided=True,
            void_reason=event.reason,
            status_message=event.message,
            current_node_id=None,
        )
    if isinstance(event, ApiVersionPinned):
        if state.api_version_lock:
            return state
        return replace(state, api_version_lock=event.version)
    if isinstance(event, StatusChanged):
        return replace(state, status_message=event.message)
    if isinstance(event, StatusNoticeAppended):
        return replace(state, status_message=append_status_notice(state.status_message, event.message))
    if isinstance(event, VariablesActivated):
        return replace(
            state,
            active_global_names=tuple(unique([*state.active_global_names, *event.global_names])),
            active_local_names=tuple(unique([*state.active_local_names, *event.local_names])),
        )
    if isinstance(event, TurnLogged):
        return replace(state, logged_turns=state.logged_turns | {event.turn})
    if isinstance(event, RosterReplaced):
        return replace(state, participants=tuple(event.participants))
    if isinstance(event, OutcomeSnapshotChanged):
        return replace(state, outcome_snapshot=event.snapshot)
    if isinstance(event, LedgerAttached):
        return replace(state, ledger=event.ledger)
    raise TypeError(f"unsupported session event: {type(event).__name__}")


Listener = Callable[[SessionState, SessionState], None]


@dataclass
class SessionStateHolder:
    """Holds the current :class:`SessionState` and notifies listeners on change."""

    _state: SessionState = field(default_factory=SessionState)
    _listeners: list[Listener] = field(default_factory=list)

    @property
    def state(self) -> SessionState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def compare_and_set(self, expected: SessionState, new: SessionState) -> bool:
        if self._state is not expected:
            return False
        self._set(new)
        return True

    def dispatch(self, event: SessionEvent) -> SessionState:
        self._set(apply_turn(self._state, event))
        return self._state

    def try_finalize(self, reason: str, result: str | None = None) -> bool:
        current = self._state
        if current.finalized:
            logger.debug("Finalize refused for session=%s reason=%s: already finalized", current.session_id, reason)
            return False
        return self.compare_and_set(current, apply_turn(current, SessionFinalized(reason=reason, result=result)))

    def _set(self, new: SessionState) -> None:
        previous = self._state
        if new is previous:
            return
        self._state = new
        for listener in list(self._listeners):
            try:
                listener(previous, new)
            except Exception:
                logger.warning("Session state listener failed", exc_info=True)
