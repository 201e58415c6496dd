from __future__ import annotations

import asyncio

import pytest

from rank_session_engine.core.adoption import PreflightInputs, session_table_topic
from rank_session_engine.core.background import drain_background
from rank_session_engine.core.config import GenerationSettings
from rank_session_engine.core.errors import EmptyRosterError
from rank_session_engine.core.session import BattleSession
from rank_session_engine.core.types import (
    CompiledPrompt,
    Edge,
    GenerationResponse,
    Graph,
    LedgerRecordResult,
    Node,
    ParsedOutcome,
)
from rank_session_engine.realtime import LocalRealtimeHub


class StubCompiler:
    def compile(self, node, slots, history_text, active_global_names, active_local_names, current_slot):
        return CompiledPrompt(text=f"prompt for {node.id}")


class ScriptedGeneration:
    def __init__(self, *responses: GenerationResponse):
        self.responses = list(responses)

    async def invoke_generation(self, request, *, headers):
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class StubAuth:
    async def get_access_token(self):
        return "token-1"


class LastLineParser:
    def parse(self, response_text):
        return ParsedOutcome(last_line=response_text.splitlines()[-1], variables=(), actors=())


class FirstEdge:
    def select(self, edges, context):
        return edges[0] if edges else None


class ListLedger:
    def record(self, ledger, entry):
        ledger["entries"].append(entry)
        return LedgerRecordResult(changed=True)

    def build_snapshot(self, ledger):
        return {"entries": len(ledger["entries"])} if ledger is not None else None


class RecordingUI:
    def __init__(self):
        self.statuses = []
        self.logs = []

    def show_status(self, message):
        self.statuses.append(message)

    def append_log(self, entries):
        self.logs.extend(entries)


GRAPH = Graph(
    nodes=(Node(id="n1", slot_no=1, is_start=True), Node(id="n2", slot_no=2)),
    edges=(Edge(from_id="n1", to="n2"), Edge(from_id="n2", to=None, action="win")),
)

ROSTER = [
    {"ownerId": "u1", "heroId": "h1", "heroName": "Aria", "role": "attack", "slotIndex": 0},
    {"ownerId": "u2", "heroId": "h2", "heroName": "Bex", "role": "defense", "slotIndex": 1},
]

OK = GenerationResponse(ok=True, data={"text": "The arena roars.\n계속"})


def _session(store, *, realtime=False, transport=None, generation=None, ui=None, graph=GRAPH):
    return BattleSession(
        game_id="game-1",
        graph=graph,
        store=store,
        compiler=StubCompiler(),
        generation=generation or ScriptedGeneration(OK),
        auth=StubAuth(),
        parser=LastLineParser(),
        edge_selector=FirstEdge(),
        ledger=ListLedger(),
        viewer_id="u1",
        game_name="Arena",
        realtime=realtime,
        transport=transport,
        ledger_factory=lambda: {"entries": []},
        settings=GenerationSettings(api_key="key-1", system_prompt="rules"),
        ui=ui,
    )


def test_async_session_runs_to_victory_and_persists(store):
    async def run_test():
        session = _session(store)
        info = await session.start(ROSTER)
        assert session.state.state.current_node_id == "n1"
        assert session.history.entries[0].public is False

        first = await session.advance_turn(reason="manual")
        assert first.status == "ok"
        second = await session.advance_turn(reason="manual")
        assert second.status == "finalized"
        assert session.state.state.result == "win"
        await drain_background()

        assert store.fetch_latest_active_session("game-1") is None
        logs = store.list_battle_logs(info.id)
        assert len(logs) == 1
        assert logs[0]["meta"]["result"] == "win"
        assert logs[0]["meta"]["turn_count"] == 2
        assert [turn["actor"]["owner_id"] for turn in logs[0]["turns"]] == ["u1", "u2"]
        assert {entry["turn_number"] for entry in store.list_turn_entries(info.id)} == {1, 2}
        assert session.local_record is None

    asyncio.run(run_test())


def test_start_refuses_roster_that_fails_preflight(store):
    async def run_test():
        session = _session(store)
        with pytest.raises(EmptyRosterError):
            await session.start(ROSTER[:1], slot_layout=[{"slot_index": 0, "role": "defense"}])
        assert store.fetch_latest_active_session("game-1") is None
        assert session.state.state.preflight is True

    asyncio.run(run_test())


def test_realtime_session_warns_idle_players_and_syncs(store):
    async def run_test():
        hub = LocalRealtimeHub()
        inserts = []
        await hub.subscribe(session_table_topic("game-1"), inserts.append)
        ui = RecordingUI()
        session = _session(store, realtime=True, transport=hub, ui=ui)

        info = await session.start(ROSTER)
        assert inserts[0]["new"]["id"] == info.id

        result = await session.advance_turn(reason="ai")
        assert result.status == "ok"
        assert session.state.state.api_version_lock == "gemini"

        stored = store.fetch_timeline_events(info.id)
        assert [event.owner_id for event in stored] == ["u2"]
        assert {event.type for event in session.sync.events} == {"warning"}
        assert session.turn_state["status"] == "completed:continue"
        assert any(entry["content"].startswith("⚠️ Bex 경고 1회") for entry in ui.logs)
        assert not any("Aria 경고" in entry["content"] for entry in ui.logs)
        assert "경고:" in session.state.state.status_message

        await session.close()
        assert hub.subscriber_count(f"rank-session:{info.id}") == 0

    asyncio.run(run_test())


def test_viewer_driving_ai_turns_is_never_switched_to_proxy(store):
    async def run_test():
        looping = Graph(nodes=(Node(id="n1", slot_no=1, is_start=True),), edges=(Edge(from_id="n1", to="n1"),))
        session = _session(store, realtime=True, graph=looping)
        await session.start(ROSTER)

        for _ in range(3):
            result = await session.advance_turn(reason="ai")
            assert result.status == "ok"

        statuses = {p.owner_id: p.status for p in session.state.state.participants}
        assert statuses == {"u1": "alive", "u2": "proxy"}
        assert "대역 전환: Bex" in session.state.state.status_message
        await session.close()

    asyncio.run(run_test())


def test_drop_in_arrival_is_logged_and_stored(store):
    async def run_test():
        ui = RecordingUI()
        session = _session(store, ui=ui)
        info = await session.start(ROSTER)

        events = await session.sync_participants(
            [ROSTER[0], {"ownerId": "u3", "heroId": "h3", "heroName": "Cyd", "role": "defense", "slotIndex": 1}]
        )
        assert [event.type for event in events] == ["drop_in_joined"]
        assert events[0].context["replacedOwnerId"] == "u2"
        assert ui.logs[-1]["content"] == "🤖 대역 교체: Cyd (defense · Cyd)"
        assert [event.id for event in store.fetch_timeline_events(info.id)] == ["drop_in_joined:h3:1"]
        assert session.state.state.participants[1].owner_id == "u3"

        assert await session.sync_participants(session.state.state.participants) == []

    asyncio.run(run_test())


def test_quota_error_voids_stored_session(store):
    async def run_test():
        generation = ScriptedGeneration(GenerationResponse(ok=False, data={"error": "quota_exhausted"}))
        session = _session(store, generation=generation)
        await session.start(ROSTER)

        result = await session.advance_turn()
        assert result.status == "voided"
        assert store.fetch_latest_active_session("game-1") is None
        assert session.local_record is None

    asyncio.run(run_test())


def test_guest_adopts_host_session_from_store(store):
    async def run_test():
        host = _session(store)
        info = await host.start(ROSTER)

        guest = BattleSession(
            game_id="game-1",
            graph=GRAPH,
            store=store,
            compiler=StubCompiler(),
            generation=ScriptedGeneration(OK),
            auth=StubAuth(),
            parser=LastLineParser(),
            edge_selector=FirstEdge(),
            ledger=ListLedger(),
            viewer_id="u2",
        )

        async def load_inputs():
            return PreflightInputs(participants=tuple(host.state.state.participants))

        adoption = guest.remote_adoption(load_inputs, host_owner_id="u1")
        assert await adoption.poll_once() is True
        assert guest.session_info.id == info.id
        assert guest.state.state.session_id == info.id
        assert guest.state.state.current_node_id == "n1"
        assert await adoption.poll_once() is False

    asyncio.run(run_test())
