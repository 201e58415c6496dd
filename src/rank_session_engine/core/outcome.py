"""Outcome processing: ledger bookkeeping, edge routing and finalization."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from .background import spawn_background
from .config import EngineConfig
from .errors import GraphRoutingError
from .history import TurnHistory
from .normalize import preview, strip_outcome_footer
from .participants import participants_status_map
from .ports import (
    EdgeSelectorPort,
    OutcomeLedgerPort,
    OutcomeParserPort,
    PersistenceCollaborators,
    SessionLifecycle,
)
from .state import (
    OutcomeSnapshotChanged,
    SessionStateHolder,
    StatusChanged,
    TurnAdvanced,
    TurnLogged,
    VariablesActivated,
    WinRecorded,
)
from .turn_completion import RealtimeTurnCompletion
from .types import (
    EdgeAction,
    Graph,
    OutcomeInput,
    OutcomeResult,
    RoutingContext,
    TurnLogRecord,
)

logger = logging.getLogger(__name__)

ROLES_RESOLVED = "roles_resolved"

_ROUTING_FAILURES = {
    GraphRoutingError.NO_PATH: ("no-bridge", "더 이상 진행할 경로가 없어 세션을 종료합니다."),
    GraphRoutingError.MISSING_NEXT: ("missing-next", "다음에 진행할 노드를 찾을 수 없습니다."),
}


def _overall_result(snapshot: Any) -> str:
    if isinstance(snapshot, Mapping):
        value = snapshot.get("overall_result", snapshot.get("overallResult"))
    else:
        value = getattr(snapshot, "overall_result", None)
    if value == "won":
        return EdgeAction.WIN
    if value == "lost":
        return EdgeAction.LOSE
    return EdgeAction.DRAW


class OutcomeProcessor:
    def __init__(
        self,
        state: SessionStateHolder,
        graph: Graph,
        history: TurnHistory,
        *,
        parser: OutcomeParserPort,
        edge_selector: EdgeSelectorPort,
        ledger: OutcomeLedgerPort,
        persistence: PersistenceCollaborators,
        lifecycle: SessionLifecycle,
        realtime: RealtimeTurnCompletion | None = None,
        config: EngineConfig | None = None,
        viewer_id: str | None = None,
    ):
        self._state = state
        self.graph = graph
        self._history = history
        self._parser = parser
        self._edge_selector = edge_selector
        self._ledger = ledger
        self._persistence = persistence
        self._lifecycle = lifecycle
        self._realtime = realtime
        self._config = config or EngineConfig()
        self.viewer_id = viewer_id
        self.turn_logs: list[TurnLogRecord] = []

    async def process(self, data: OutcomeInput) -> OutcomeResult:
        outcome = self._parser.parse(data.response_text)
        variables = list(outcome.variables)
        visible_response, _ = strip_outcome_footer(data.response_text, self._config.footer_lines)

        actor_names = list(outcome.actors)
        if not actor_names:
            participant = data.actor_context.participant
            hero_slot = data.actor_context.hero_slot
            if participant is not None and participant.hero_name:
                actor_names = [participant.hero_name]
            elif hero_slot is not None and hero_slot.name:
                actor_names = [hero_slot.name]
        self._lifecycle.update_hero_assets(actor_names, data.actor_context)

        for entry in (data.prompt_entry, data.response_entry):
            if entry is not None:
                entry.meta = {**entry.meta, "actors": list(actor_names)}

        summary = None
        already_logged = bool((data.server_payload or {}).get("logged")) or data.turn in self._state.state.logged_turns
        if not already_logged:
            summary = await self._write_fallback_log(data, outcome, visible_response, actor_names)

        current = self._state.state
        if current.ledger is None:
            self._state.dispatch(OutcomeSnapshotChanged(self._ledger.build_snapshot(None)))
            return OutcomeResult(finalized=False)

        self._state.dispatch(VariablesActivated(global_names=tuple(variables), local_names=()))
        current = self._state.state
        end_triggered = bool(current.end_condition_variable) and current.end_condition_variable in variables
        context = RoutingContext(
            turn=data.turn,
            history_user_text=self._history.joined_text(only_public=True, last=self._config.routing_history_limit),
            history_ai_text=self._history.joined_text(only_public=False, last=self._config.routing_history_limit),
            visited_slot_ids=current.visited_slot_ids,
            participants_status=participants_status_map(current.participants),
            active_global_names=current.active_global_names,
            active_local_names=tuple(variables),
            current_role=data.actor_context.role,
            brawl_enabled=current.brawl_enabled,
            win_count=current.win_count,
            end_triggered=end_triggered,
        )
        edge = self._edge_selector.select(self.graph.outgoing(data.node.id), context)

        self.turn_logs.append(
            TurnLogRecord(
                turn=data.turn,
                node_id=data.node.id,
                slot_index=data.slot_binding.slot_index,
                prompt=data.prompt_text,
                response=data.response_text,
                visible_response=visible_response,
                outcome=outcome.last_line or "",
                variables=tuple(variables),
                next=str(edge.to) if edge is not None and edge.to is not None else None,
                action=edge.action if edge is not None else EdgeAction.CONTINUE,
                actors=tuple(actor_names),
                prompt_audience=dict(data.slot_binding.prompt_audience),
                response_audience=dict(data.slot_binding.response_audience),
                summary=(data.server_payload or {}).get("summary") or summary,
            )
        )

        record = self._ledger.record(
            current.ledger,
            {
                "turn": data.turn,
                "slot_index": data.slot_binding.slot_index,
                "result_line": outcome.last_line or "",
                "variables": list(variables),
                "actors": list(actor_names),
                "participants_snapshot": [p.to_dict() for p in current.participants],
                "brawl_enabled": current.brawl_enabled,
            },
        )
        if record.changed:
            snapshot = self._ledger.build_snapshot(current.ledger)
            self._state.dispatch(OutcomeSnapshotChanged(snapshot))
            if record.completed and not self._state.state.finalized:
                return await self._finalize_roles_resolved(data, snapshot)

        if edge is None:
            return await self._finalize_routing_failure(GraphRoutingError.NO_PATH, data)

        if edge.action == EdgeAction.WIN:
            upcoming = current.win_count + 1
            if current.brawl_enabled and not end_triggered:
                self._state.dispatch(WinRecorded())
                self._state.dispatch(
                    StatusChanged(f"승리 {upcoming}회 달성! 난입 허용 규칙으로 전투가 계속됩니다.")
                )
            else:
                suffix = f" 누적 승리 {upcoming}회를 기록했습니다." if current.brawl_enabled else ""
                return await self._finalize_edge(
                    EdgeAction.WIN,
                    data,
                    f"승리 조건이 충족되었습니다!{suffix}",
                    record_win=current.brawl_enabled,
                )
        elif edge.action == EdgeAction.LOSE:
            message = (
                "패배로 해당 역할군이 전장에서 추방되었습니다."
                if current.brawl_enabled
                else "패배 조건이 충족되었습니다."
            )
            return await self._finalize_edge(EdgeAction.LOSE, data, message)
        elif edge.action == EdgeAction.DRAW:
            return await self._finalize_edge(EdgeAction.DRAW, data, "무승부로 종료되었습니다.")

        if edge.to is None:
            return await self._finalize_routing_failure(GraphRoutingError.MISSING_NEXT, data)

        if self._realtime is not None:
            await self._realtime.finalize_realtime_turn(EdgeAction.CONTINUE)
        self._state.dispatch(TurnAdvanced(next_node_id=str(edge.to), visited_node_id=data.node.id))
        return OutcomeResult(finalized=False)

    async def _write_fallback_log(self, data: OutcomeInput, outcome, visible_response: str, actor_names: list[str]):
        limit = self._config.preview_chars
        slot_index = data.slot_binding.slot_index
        summary = {
            "preview": preview(visible_response, limit),
            "prompt_preview": preview(data.prompt_text, limit),
            "outcome": {
                "last_line": outcome.last_line or None,
                "variables": list(outcome.variables) or None,
                "actors": list(actor_names) or None,
            },
            "extra": {"slot_index": slot_index, "node_id": data.node.id, "source": "fallback-log"},
        }
        prompt_entry = data.prompt_entry
        response_entry = data.response_entry
        prompt_public = prompt_entry.public if prompt_entry is not None else True
        response_public = response_entry.public if response_entry is not None else True
        if data.slot_binding.has_limited_audience:
            prompt_visibility = "hidden" if not prompt_public else "private"
        else:
            prompt_visibility = "public"
        entries = [
            {
                "role": prompt_entry.role if prompt_entry is not None else "system",
                "content": (prompt_entry.content if prompt_entry is not None else "") or data.prompt_text,
                "public": prompt_public,
                "visibility": prompt_visibility,
                "extra": {"slot_index": slot_index},
            },
            {
                "role": response_entry.role if response_entry is not None else "assistant",
                "content": data.response_text,
                "public": response_public,
                "visibility": "public" if response_public else "private",
                "actors": list(actor_names),
                "summary": summary,
                "extra": {"slot_index": slot_index, "node_id": data.node.id},
            },
        ]
        try:
            await self._persistence.log_turn_entries(entries, data.turn)
        except Exception:
            logger.warning("Fallback turn log failed for turn %s", data.turn, exc_info=True)
        else:
            self._state.dispatch(TurnLogged(data.turn))
        return summary

    async def _capture(self, result: str, reason: str) -> None:
        try:
            await self._lifecycle.capture_battle_log(result, reason=reason)
        except Exception:
            logger.warning("Battle log capture failed (result=%s reason=%s)", result, reason, exc_info=True)

    async def _finalize_realtime(self, reason: str) -> None:
        if self._realtime is None:
            return
        try:
            await self._realtime.finalize_realtime_turn(reason)
        except Exception:
            logger.warning("Realtime turn completion failed (reason=%s)", reason, exc_info=True)

    async def _finalize_roles_resolved(self, data: OutcomeInput, snapshot: Any) -> OutcomeResult:
        result = _overall_result(snapshot)
        if not self._state.try_finalize(ROLES_RESOLVED, result):
            return OutcomeResult(finalized=True)
        self._state.dispatch(StatusChanged("모든 역할군 결과가 확정되어 세션을 종료합니다."))
        await self._finalize_realtime(ROLES_RESOLVED)
        await self._capture(result, ROLES_RESOLVED)
        self._lifecycle.clear_session_record()
        spawn_background(
            self._persistence.finalize_session_remotely(
                {"session_info": data.session_info, "game_id": data.game_id}
            ),
            name=f"finalize:{ROLES_RESOLVED}",
        )
        logger.info("Session %s finalized: all roles resolved", self._state.state.session_id)
        return OutcomeResult(finalized=True)

    async def _finalize_routing_failure(self, reason: str, data: OutcomeInput) -> OutcomeResult:
        realtime_reason, message = _ROUTING_FAILURES[reason]
        error = GraphRoutingError(message, reason=reason, node_id=data.node.id)
        if not self._state.try_finalize(reason, "terminated"):
            return OutcomeResult(finalized=True)
        logger.warning("Routing stopped at node %s: %s", data.node.id, error)
        await self._finalize_realtime(realtime_reason)
        self._state.dispatch(StatusChanged(message))
        await self._capture("terminated", reason)
        self._lifecycle.clear_session_record()
        return OutcomeResult(finalized=True)

    async def _finalize_edge(
        self,
        action: str,
        data: OutcomeInput,
        message: str,
        *,
        record_win: bool = False,
    ) -> OutcomeResult:
        if not self._state.try_finalize(action, action):
            return OutcomeResult(finalized=True)
        if record_win:
            self._state.dispatch(WinRecorded())
        await self._finalize_realtime(action)
        self._state.dispatch(StatusChanged(message))
        await self._capture(action, action)

        snapshot = None
        ledger = self._state.state.ledger
        if ledger is not None:
            snapshot = self._ledger.build_snapshot(ledger)
            self._state.dispatch(OutcomeSnapshotChanged(snapshot))
        spawn_background(
            self._persistence.finalize_session_remotely(
                {
                    "snapshot": snapshot,
                    "reason": action,
                    "response_text": data.response_text,
                    "turn_number": data.turn,
                }
            ),
            name=f"finalize:{action}",
        )

        owner_id = data.actor_context.owner_id
        if action == EdgeAction.LOSE and self.viewer_id and owner_id == self.viewer_id:
            self._lifecycle.mark_session_defeated()
        else:
            self._lifecycle.clear_session_record()
        logger.info("Session %s finalized by edge action %s", self._state.state.session_id, action)
        return OutcomeResult(finalized=True)
