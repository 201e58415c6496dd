from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol, Sequence

from ..core.types import SessionInfo, SessionRow, TimelineEvent


class SessionRepo(Protocol):
    def get(self, session_id: str): ...
    def create(self, game_id: str, owner_id: str | None, mode: str = "async", meta_json: str = "{}"): ...
    def latest_active(self, game_id: str, owner_id: str | None = None): ...
    def set_status(
        self,
        session_id: str,
        status: str,
        *,
        expected_status: str | None = None,
        values: dict[str, Any] | None = None,
    ) -> bool: ...
    def bump_turn(self, session_id: str, turn_number: int) -> None: ...


class TurnLogRepo(Protocol):
    def add(
        self,
        session_id: str,
        turn_number: int,
        role: str,
        content: str,
        public: bool = True,
        visibility: str = "public",
        meta_json: str = "{}",
    ): ...
    def list_for_session(self, session_id: str, turn_number: int | None = None): ...


class TimelineEventRepo(Protocol):
    def add_if_absent(self, **values: Any) -> bool: ...
    def list_for_session(self, session_id: str, limit: int | None = None): ...


class TurnStateEventRepo(Protocol):
    def add(
        self,
        session_id: str,
        turn_number: int,
        status: str,
        deadline: int = 0,
        remaining_seconds: int = 0,
        payload_json: str = "{}",
    ): ...
    def latest(self, session_id: str): ...


class BattleLogRepo(Protocol):
    def add_once(
        self,
        session_id: str,
        game_id: str | None,
        result: str,
        reason: str | None,
        signature: str,
        draft_json: str,
    ) -> bool: ...
    def list_for_session(self, session_id: str): ...


class UnitOfWork(Protocol):
    sessions: SessionRepo
    turn_logs: TurnLogRepo
    timeline: TimelineEventRepo
    turn_states: TurnStateEventRepo
    battle_logs: BattleLogRepo

    def commit(self) -> None: ...
    def rollback(self) -> None: ...

    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...


class SessionStore(Protocol):
    def start_session(self, game_id: str, owner_id: str | None, *, mode: str = "async", reuse: bool = True) -> SessionInfo: ...
    def fetch_latest_active_session(self, game_id: str, owner_id: str | None = None) -> SessionRow | None: ...
    def append_turn_entries(self, session_id: str, entries: Sequence[Mapping[str, Any]], turn_number: int) -> int: ...
    def append_timeline_events(self, session_id: str, events: Iterable[Any], *, game_id: str | None = None) -> int: ...
    def fetch_timeline_events(self, session_id: str, limit: int | None = None) -> list[TimelineEvent]: ...
    def record_turn_state(
        self,
        session_id: str,
        turn_number: int,
        status: str,
        *,
        deadline: int = 0,
        remaining_seconds: int = 0,
        payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]: ...
    def complete_session(
        self,
        session_id: str,
        *,
        result: str | None = None,
        reason: str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> bool: ...
    def void_session(self, session_id: str, reason: str | None = None) -> bool: ...
    def save_battle_log(
        self,
        session_id: str,
        draft: Mapping[str, Any],
        *,
        signature: str,
        game_id: str | None = None,
    ) -> bool: ...
