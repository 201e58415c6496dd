from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Sequence

from .types import (
    ActorContext,
    CompiledPrompt,
    Edge,
    GenerationRequest,
    GenerationResponse,
    HeroSlot,
    LedgerRecordResult,
    Node,
    ParsedOutcome,
    RealtimePresenceSnapshot,
    RoutingContext,
    SessionRow,
    TurnCompletion,
)


class PromptCompilerPort(Protocol):
    def compile(
        self,
        node: Node,
        slots: Sequence[HeroSlot | None],
        history_text: str,
        active_global_names: Sequence[str],
        active_local_names: Sequence[str],
        current_slot: int | None,
    ) -> CompiledPrompt:
        ...


class GenerationPort(Protocol):
    async def invoke_generation(
        self,
        request: GenerationRequest,
        *,
        headers: Mapping[str, str],
    ) -> GenerationResponse:
        ...


class AuthTokenProvider(Protocol):
    async def get_access_token(self) -> str | None:
        ...


class OutcomeParserPort(Protocol):
    def parse(self, response_text: str) -> ParsedOutcome:
        ...


class EdgeSelectorPort(Protocol):
    def select(self, edges: Sequence[Edge], context: RoutingContext) -> Edge | None:
        ...


class OutcomeLedgerPort(Protocol):
    def record(self, ledger: Any, entry: Mapping[str, Any]) -> LedgerRecordResult:
        ...

    def build_snapshot(self, ledger: Any) -> Any:
        ...


class PersistenceCollaborators(Protocol):
    async def log_turn_entries(self, entries: Sequence[Mapping[str, Any]], turn_number: int) -> None:
        ...

    async def finalize_session_remotely(self, payload: Mapping[str, Any]) -> None:
        ...


class SessionLifecycle(Protocol):
    async def capture_battle_log(self, result: str, *, reason: str | None = None) -> None:
        ...

    def clear_session_record(self) -> None:
        ...

    def mark_session_defeated(self) -> None:
        ...

    def update_hero_assets(self, actor_names: Sequence[str], actor_context: ActorContext) -> None:
        ...


class UICallbacks(Protocol):
    def show_status(self, message: str) -> None:
        ...

    def append_log(self, entries: Sequence[Mapping[str, Any]]) -> None:
        ...


class NullUICallbacks:
    def show_status(self, message: str) -> None:
        return None

    def append_log(self, entries: Sequence[Mapping[str, Any]]) -> None:
        return None


class RealtimeManagerPort(Protocol):
    def begin_turn(
        self,
        turn_number: int,
        eligible_owner_ids: Iterable[str],
    ) -> RealtimePresenceSnapshot:
        ...

    def complete_turn(
        self,
        turn_number: int,
        reason: str | None,
        eligible_owner_ids: Iterable[str],
    ) -> TurnCompletion:
        ...

    def record_participation(
        self,
        owner_id: str,
        turn_number: int,
        *,
        type: str = "action",
    ) -> RealtimePresenceSnapshot:
        ...

    def get_snapshot(self) -> RealtimePresenceSnapshot:
        ...


class Subscription(Protocol):
    @property
    def topic(self) -> str:
        ...

    @property
    def status(self) -> str:
        ...

    async def unsubscribe(self) -> None:
        ...


MessageHandler = Callable[[Mapping[str, Any]], Awaitable[None] | None]


class RealtimePort(Protocol):
    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        event: str | None = None,
        on_status: Callable[[str], Awaitable[None] | None] | None = None,
    ) -> Subscription:
        ...

    async def publish(self, topic: str, event: str, payload: Mapping[str, Any]) -> int:
        ...


class SessionDirectoryPort(Protocol):
    async def fetch_latest_active_session(
        self,
        game_id: str,
        *,
        owner_id: str | None = None,
    ) -> SessionRow | None:
        ...
