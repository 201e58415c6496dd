"""Composition root wiring the turn engine to storage and realtime transport."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..persistence.interfaces import SessionStore
from .adoption import RemoteSessionAdoption, session_table_topic
from .battle_log import build_battle_log_draft
from .config import EngineConfig, GenerationSettings
from .drop_in import DropInQueueService, arrival_to_timeline_event
from .engine import TurnController
from .history import TurnHistory
from .outcome import OutcomeProcessor
from .participants import build_owner_display_map, coerce_participants
from .ports import (
    AuthTokenProvider,
    EdgeSelectorPort,
    GenerationPort,
    NullUICallbacks,
    OutcomeLedgerPort,
    OutcomeParserPort,
    PromptCompilerPort,
    RealtimePort,
    UICallbacks,
)
from .preflight import prepare_session_roster
from .presence import RealtimePresenceManager
from .state import RosterReplaced, SessionBooted, SessionStateHolder, StatusChanged
from .sync import TIMELINE_EVENT, RealtimeSync, timeline_topic, turn_state_topic
from .timeline import build_log_entries_from_events, merge_timeline_events
from .turn_completion import RealtimeTurnCompletion
from .types import (
    ActorContext,
    DropInSnapshot,
    Graph,
    Participant,
    RealtimePresenceSnapshot,
    SessionInfo,
    SessionRow,
    TimelineEvent,
    TurnResult,
)

logger = logging.getLogger(__name__)


class BattleSession:
    def __init__(
        self,
        *,
        game_id: str,
        graph: Graph,
        store: SessionStore,
        compiler: PromptCompilerPort,
        generation: GenerationPort,
        auth: AuthTokenProvider,
        parser: OutcomeParserPort,
        edge_selector: EdgeSelectorPort,
        ledger: OutcomeLedgerPort,
        viewer_id: str | None = None,
        game_name: str | None = None,
        realtime: bool = False,
        transport: RealtimePort | None = None,
        brawl_enabled: bool = False,
        end_condition_variable: str | None = None,
        ledger_factory: Callable[[], Any] | None = None,
        settings: GenerationSettings | None = None,
        config: EngineConfig | None = None,
        ui: UICallbacks | None = None,
    ):
        self.game_id = game_id
        self.game_name = game_name
        self.viewer_id = viewer_id
        self.realtime = realtime
        self.brawl_enabled = brawl_enabled
        self.end_condition_variable = end_condition_variable
        self._store = store
        self._transport = transport
        self._ledger_factory = ledger_factory
        self.config = config or EngineConfig()
        self.ui = ui or NullUICallbacks()

        self.state = SessionStateHolder()
        self.state.subscribe(self._on_state_change)
        self.history = TurnHistory()
        self.session_info: SessionInfo | None = None
        self.local_record: dict[str, Any] | None = None
        self.hero_assets: dict[str, Any] = {}
        self.battle_log: dict[str, Any] | None = None
        self.turn_state: dict[str, Any] | None = None
        self.timeline_events: list[TimelineEvent] = []
        self.presence: RealtimePresenceSnapshot | None = None
        self.drop_in_snapshot: DropInSnapshot | None = None
        self._battle_log_signatures: set[str] = set()

        self.presence_manager = RealtimePresenceManager(warning_limit=self.config.warning_limit)
        self.drop_in = DropInQueueService()
        self.turn_completion = RealtimeTurnCompletion(
            self.state,
            self,
            manager=self.presence_manager if realtime else None,
            record_turn_state=self.record_turn_state,
            apply_snapshot=self.apply_realtime_snapshot,
            ui=self.ui,
        )
        self.processor = OutcomeProcessor(
            self.state,
            graph,
            self.history,
            parser=parser,
            edge_selector=edge_selector,
            ledger=ledger,
            persistence=self,
            lifecycle=self,
            realtime=self.turn_completion,
            config=self.config,
            viewer_id=viewer_id,
        )
        self.controller = TurnController(
            self.state,
            graph,
            self.history,
            self.processor,
            compiler=compiler,
            generation=generation,
            auth=auth,
            realtime=self.turn_completion,
            settings=settings,
            config=self.config,
            viewer_id=viewer_id,
            on_void=self.void_session,
        )
        self.sync = (
            RealtimeSync(
                transport,
                apply_turn_state_change=self.apply_turn_state_change,
                backfill=self.backfill_turn_events,
            )
            if transport is not None
            else None
        )

    @property
    def graph(self) -> Graph:
        return self.controller.graph

    def _on_state_change(self, previous, current) -> None:
        if current.status_message and current.status_message != previous.status_message:
            self.ui.show_status(current.status_message)

    # --- session start -------------------------------------------------

    async def start(
        self,
        participants: Sequence[Participant | Mapping[str, Any]],
        *,
        slot_layout: Sequence[Any] | None = None,
        matching_metadata: Mapping[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> SessionInfo:
        result = prepare_session_roster(participants, slot_layout, matching_metadata)
        info = self._store.start_session(
            self.game_id,
            owner_id or self.viewer_id,
            mode="realtime" if self.realtime else "async",
        )
        await self.boot_local_session(result.participants, info)
        if self._transport is not None and not info.reused:
            await self._transport.publish(
                session_table_topic(self.game_id),
                "INSERT",
                {
                    "eventType": "INSERT",
                    "new": {
                        "id": info.id,
                        "status": info.status,
                        "owner_id": owner_id or self.viewer_id,
                        "created_at": info.created_at,
                        "game_id": self.game_id,
                    },
                },
            )
        return info

    async def boot_local_session(self, participants: Sequence[Participant], info: SessionInfo) -> None:
        roster = tuple(coerce_participants(participants))
        start = self.graph.start_node()
        self.session_info = info
        self.controller.session_info = info
        self.local_record = {"session_id": info.id, "game_id": self.game_id, "status": "active"}
        self.state.dispatch(
            SessionBooted(
                session_id=info.id,
                start_node_id=start.id if start is not None else None,
                participants=roster,
                game_id=self.game_id,
                realtime=self.realtime,
                brawl_enabled=self.brawl_enabled,
                end_condition_variable=self.end_condition_variable,
                ledger=self._ledger_factory() if self._ledger_factory is not None else None,
            )
        )
        self.history.begin_session(self.controller.settings.system_prompt)
        self.timeline_events = []
        self.drop_in.reset()
        self.drop_in_snapshot = self.drop_in.sync_participants(
            roster, turn_number=1, mode="realtime" if self.realtime else "async"
        ).snapshot
        if self.realtime:
            self.presence_manager.reset()
            self.presence_manager.sync_participants(roster)
            self.presence_manager.set_managed_owners(p.owner_id for p in roster if p.owner_id)
            self.turn_completion.begin_turn(1)
        if self.sync is not None:
            await self.sync.attach(info.id)
        if start is None:
            self.state.dispatch(StatusChanged("시작 노드를 찾을 수 없습니다."))
        logger.info("Booted session %s for game %s with %d participant(s)", info.id, self.game_id, len(roster))

    def remote_adoption(
        self,
        load_preflight_inputs: Callable[[], Any],
        *,
        host_owner_id: str | None = None,
    ) -> RemoteSessionAdoption:
        return RemoteSessionAdoption(
            self.state,
            game_id=self.game_id,
            directory=self,
            load_preflight_inputs=load_preflight_inputs,
            boot=self.boot_local_session,
            on_session_info=self._remember_session_info,
            host_owner_id=host_owner_id,
            poll_interval_seconds=self.config.remote_poll_interval_seconds,
        )

    def _remember_session_info(self, info: SessionInfo) -> None:
        self.session_info = info
        self.controller.session_info = info

    async def fetch_latest_active_session(self, game_id: str, *, owner_id: str | None = None) -> SessionRow | None:
        return self._store.fetch_latest_active_session(game_id, owner_id)

    # --- turn driving --------------------------------------------------

    async def advance_turn(self, override_response: str | None = None, *, reason: str = "unspecified") -> TurnResult:
        return await self.controller.advance_turn(override_response, reason=reason)

    # --- persistence collaborators ------------------------------------

    def _require_session_id(self) -> str:
        if self.session_info is None:
            raise RuntimeError("session has not been started")
        return self.session_info.id

    async def log_turn_entries(self, entries: Sequence[Mapping[str, Any]], turn_number: int) -> None:
        self._store.append_turn_entries(self._require_session_id(), entries, turn_number)

    async def finalize_session_remotely(self, payload: Mapping[str, Any]) -> None:
        session_id = self._require_session_id()
        current = self.state.state
        self._store.complete_session(
            session_id,
            result=current.result,
            reason=payload.get("reason") or current.finalize_reason,
            payload=payload,
        )
        if self._transport is not None:
            await self._transport.publish(
                session_table_topic(self.game_id),
                "UPDATE",
                {"eventType": "UPDATE", "new": {"id": session_id, "status": "finalized", "game_id": self.game_id}},
            )

    async def record_turn_state(self, turn_number: int, status: str) -> None:
        session_id = self._require_session_id()
        row = self._store.record_turn_state(session_id, turn_number, status)
        if self._transport is not None:
            await self._transport.publish(turn_state_topic(session_id), "INSERT", {"eventType": "INSERT", "new": row})

    async def apply_turn_state_change(self, change: Mapping[str, Any]) -> None:
        record = change.get("new") if isinstance(change.get("new"), Mapping) else change
        self.turn_state = dict(record)

    async def backfill_turn_events(self, session_id: str) -> list[TimelineEvent]:
        return self._store.fetch_timeline_events(session_id)

    # --- session lifecycle --------------------------------------------

    async def capture_battle_log(self, result: str, *, reason: str | None = None) -> None:
        current = self.state.state
        signature = f"{current.session_id}:{result}:{reason or ''}:{current.turn}"
        if signature in self._battle_log_signatures:
            return
        self._battle_log_signatures.add(signature)
        events = self.sync.events if self.sync is not None else []
        draft = build_battle_log_draft(
            game_id=self.game_id,
            session_id=current.session_id,
            game_name=self.game_name,
            result=result,
            reason=reason,
            logs=self.processor.turn_logs,
            history_entries=self.history.entries,
            timeline_events=merge_timeline_events(self.timeline_events, events),
            participants=current.participants,
            realtime_presence=self.presence,
            drop_in_snapshot=self.drop_in_snapshot,
            win_count=current.win_count,
            end_turn=current.turn,
        )
        self.battle_log = draft.to_dict()
        if current.session_id:
            self._store.save_battle_log(current.session_id, self.battle_log, signature=signature, game_id=self.game_id)

    def clear_session_record(self) -> None:
        self.local_record = None

    def mark_session_defeated(self) -> None:
        record = dict(self.local_record or {"session_id": self.state.state.session_id, "game_id": self.game_id})
        record["status"] = "defeated"
        self.local_record = record

    def update_hero_assets(self, actor_names: Sequence[str], actor_context: ActorContext) -> None:
        self.hero_assets = {"actors": list(actor_names), "slot_index": actor_context.slot_index}

    def void_session(self, message: str, details: Mapping[str, Any]) -> None:
        if self.session_info is not None:
            self._store.void_session(self.session_info.id, details.get("reason"))
        self.local_record = None

    # --- realtime -----------------------------------------------------

    def apply_realtime_snapshot(self, snapshot: RealtimePresenceSnapshot | None) -> None:
        if snapshot is None:
            return
        self.presence = snapshot
        if self.sync is not None:
            self.sync.apply_snapshot(snapshot)
        known = {event.id for event in self.timeline_events}
        self.timeline_events = merge_timeline_events(self.timeline_events, snapshot.events)
        fresh = [event for event in self.timeline_events if event.id not in known]
        if fresh and self.session_info is not None:
            self._store.append_timeline_events(self.session_info.id, fresh, game_id=self.game_id)

    async def record_timeline_events(self, events: Iterable[Any], *, turn_number: int | None = None) -> list[TimelineEvent]:
        current = self.state.state
        turn = turn_number if turn_number is not None else current.turn
        incoming = list(events)
        merged_before = {event.id for event in self.timeline_events}
        self.timeline_events = merge_timeline_events(self.timeline_events, incoming, default_turn=turn)
        fresh = [event for event in self.timeline_events if event.id not in merged_before]
        if not fresh:
            return []
        if self.sync is not None:
            self.sync.merge_events(fresh)
        if self.session_info is not None:
            self._store.append_timeline_events(self.session_info.id, fresh, game_id=self.game_id)
        entries = build_log_entries_from_events(
            fresh,
            owner_display_map=build_owner_display_map(current.participants),
            default_turn=turn,
            default_mode="realtime" if self.realtime else "async",
        )
        if entries:
            self.ui.append_log(entries)
            try:
                await self.log_turn_entries(entries, turn)
            except Exception:
                logger.warning("Failed to log timeline entries for turn %s", turn, exc_info=True)
        if self._transport is not None and self.session_info is not None:
            await self._transport.publish(
                timeline_topic(self.session_info.id),
                TIMELINE_EVENT,
                {"events": [event.to_dict() for event in fresh]},
            )
        return fresh

    async def sync_participants(self, participants: Sequence[Participant | Mapping[str, Any]]) -> list[TimelineEvent]:
        roster = tuple(coerce_participants(participants))
        current = self.state.state
        self.state.dispatch(RosterReplaced(roster))
        mode = "realtime" if self.realtime else "async"
        outcome = self.drop_in.sync_participants(roster, turn_number=current.turn, mode=mode)
        self.drop_in_snapshot = outcome.snapshot
        if self.realtime:
            self.apply_realtime_snapshot(self.presence_manager.sync_participants(roster))
        if not outcome.arrivals:
            return []
        return await self.record_timeline_events(
            [arrival_to_timeline_event(arrival, mode=mode) for arrival in outcome.arrivals],
            turn_number=current.turn,
        )

    async def close(self) -> None:
        if self.sync is not None:
            await self.sync.detach()
        await asyncio.sleep(0)
