from __future__ import annotations

import asyncio

from rank_session_engine.core.config import GenerationSettings
from rank_session_engine.core.engine import TurnController, extract_response_text
from rank_session_engine.core.history import TurnHistory
from rank_session_engine.core.outcome import OutcomeProcessor
from rank_session_engine.core.presence import RealtimePresenceManager
from rank_session_engine.core.state import ApiVersionPinned, SessionBooted, SessionStateHolder
from rank_session_engine.core.turn_completion import RealtimeTurnCompletion
from rank_session_engine.core.types import (
    CompiledPrompt,
    Edge,
    GenerationResponse,
    Graph,
    LedgerRecordResult,
    Node,
    ParsedOutcome,
    Participant,
    SessionInfo,
)


class StubCompiler:
    def compile(self, node, slots, history_text, active_global_names, active_local_names, current_slot):
        return CompiledPrompt(text=f"prompt for {node.id}")


class StubGeneration:
    def __init__(self, response: GenerationResponse):
        self.response = response
        self.calls = []

    async def invoke_generation(self, request, *, headers):
        self.calls.append((request, dict(headers)))
        return self.response


class StubAuth:
    def __init__(self, token="token-1"):
        self.token = token

    async def get_access_token(self):
        return self.token


class StubParser:
    def parse(self, response_text):
        return ParsedOutcome(last_line=response_text.splitlines()[-1], variables=(), actors=())


class FirstEdge:
    def select(self, edges, context):
        return edges[0] if edges else None


class StubLedger:
    def record(self, ledger, entry):
        return LedgerRecordResult()

    def build_snapshot(self, ledger):
        return None


class StubCollaborators:
    def __init__(self):
        self.logged = []

    async def log_turn_entries(self, entries, turn_number):
        self.logged.append(turn_number)

    async def finalize_session_remotely(self, payload):
        return None

    async def capture_battle_log(self, result, *, reason=None):
        return None

    def clear_session_record(self):
        return None

    def mark_session_defeated(self):
        return None

    def update_hero_assets(self, actor_names, actor_context):
        return None


GRAPH = Graph(
    nodes=(
        Node(id="n1", slot_no=1, is_start=True),
        Node(id="n2", slot_no=2, slot_type="user_action"),
    ),
    edges=(Edge(from_id="n1", to="n2"), Edge(from_id="n2", to="n1")),
)
ROSTER = (
    Participant(owner_id="u1", hero_id="h1", role="attack", slot_index=0, hero_name="Aria"),
    Participant(owner_id="u2", hero_id="h2", role="defense", slot_index=1, hero_name="Bex"),
)


def _controller(
    response=None,
    *,
    realtime=False,
    viewer_id="u1",
    api_key="key-1",
    token="token-1",
    boot=True,
    voids=None,
    generation=None,
    manager=None,
):
    state = SessionStateHolder()
    if boot:
        state.dispatch(
            SessionBooted(session_id="s1", start_node_id="n1", participants=ROSTER, game_id="g1", realtime=realtime, ledger={})
        )
    history = TurnHistory()
    collaborators = StubCollaborators()
    completion = None
    if realtime:
        manager = manager or RealtimePresenceManager()
        manager.sync_participants(ROSTER)
        completion = RealtimeTurnCompletion(state, collaborators, manager=manager)
    processor = OutcomeProcessor(
        state,
        GRAPH,
        history,
        parser=StubParser(),
        edge_selector=FirstEdge(),
        ledger=StubLedger(),
        persistence=collaborators,
        lifecycle=collaborators,
        realtime=completion,
    )
    generation = generation or StubGeneration(
        response or GenerationResponse(ok=True, data={"text": "The duel begins.\n계속"})
    )
    controller = TurnController(
        state,
        GRAPH,
        history,
        processor,
        compiler=StubCompiler(),
        generation=generation,
        auth=StubAuth(token),
        realtime=completion,
        settings=GenerationSettings(api_key=api_key, api_version="gemini", system_prompt="rules"),
        viewer_id=viewer_id,
        on_void=(lambda message, details: voids.append((message, dict(details)))) if voids is not None else None,
    )
    controller.session_info = SessionInfo(id="s1")
    return controller, state, history, generation


def test_extract_response_text_prefers_text_then_choices():
    assert extract_response_text({"text": "  hi  "}) == "hi"
    assert extract_response_text({"choices": [{"message": {"content": "from choices"}}]}) == "from choices"
    assert extract_response_text({"content": "raw"}) == "raw"
    assert extract_response_text({}) == ""


def test_turn_is_rejected_before_session_start():
    async def run_test():
        controller, state, _, generation = _controller(boot=False)
        result = await controller.advance_turn()
        assert result.status == "rejected"
        assert "게임 시작" in state.state.status_message
        assert generation.calls == []

    asyncio.run(run_test())


def test_ai_turn_generates_and_advances():
    async def run_test():
        controller, state, history, generation = _controller()
        result = await controller.advance_turn(reason="manual")

        assert result.status == "ok"
        assert state.state.turn == 2
        assert state.state.current_node_id == "n2"
        request, headers = generation.calls[0]
        assert headers == {"Authorization": "Bearer token-1"}
        assert request.session_id == "s1"
        assert request.gemini_mode is None
        assert [entry.role for entry in history.entries] == ["system", "assistant"]
        assert history.entries[1].content == "The duel begins.\n계속"

    asyncio.run(run_test())


def test_user_action_by_other_player_is_rejected():
    async def run_test():
        controller, state, _, generation = _controller(viewer_id="u1")
        await controller.advance_turn()
        assert state.state.current_node_id == "n2"

        result = await controller.advance_turn()
        assert result.status == "rejected"
        assert result.reason == "not_your_turn"
        assert len(generation.calls) == 1

    asyncio.run(run_test())


def test_missing_api_key_rejects_without_generation():
    async def run_test():
        controller, state, _, generation = _controller(api_key="")
        result = await controller.advance_turn()
        assert result.status == "rejected"
        assert "API 키" in result.message
        assert generation.calls == []
        assert state.state.turn == 1

    asyncio.run(run_test())


def test_override_response_skips_generation():
    async def run_test():
        controller, state, _, generation = _controller(api_key="")
        result = await controller.advance_turn("manual reply\n계속")
        assert result.status == "ok"
        assert generation.calls == []
        assert state.state.turn == 2

    asyncio.run(run_test())


def test_missing_token_aborts_turn():
    async def run_test():
        controller, state, _, _ = _controller(token=None)
        result = await controller.advance_turn()
        assert result.status == "error"
        assert result.reason == "auth_token_missing"
        assert state.state.turn == 1
        assert controller.advancing is False

    asyncio.run(run_test())


def test_api_key_error_voids_session():
    async def run_test():
        voids = []
        controller, state, _, _ = _controller(
            GenerationResponse(ok=False, data={"error": "quota_exhausted"}), voids=voids
        )
        result = await controller.advance_turn()

        assert result.status == "voided"
        assert result.reason == "quota_exhausted"
        assert state.state.voided is True
        assert voids[0][1]["reason"] == "quota_exhausted"
        assert voids[0][1]["session_id"] == "s1"

        again = await controller.advance_turn()
        assert again.status == "voided"

    asyncio.run(run_test())


def test_generation_error_keeps_session_alive():
    async def run_test():
        controller, state, _, _ = _controller(GenerationResponse(ok=False, data={"error": "server_busy"}))
        result = await controller.advance_turn()
        assert result.status == "error"
        assert result.reason == "server_busy"
        assert state.state.voided is False
        assert state.state.current_node_id == "n1"

    asyncio.run(run_test())


def test_realtime_api_version_is_pinned_and_enforced():
    async def run_test():
        controller, state, _, _ = _controller(realtime=True)
        await controller.advance_turn()
        assert state.state.api_version_lock == "gemini"

        state.dispatch(ApiVersionPinned("openai"))
        controller.update_settings(api_version="openai")
        assert state.state.api_version_lock == "gemini"

        controller.viewer_id = "u2"
        result = await controller.advance_turn()
        assert result.status == "error"
        assert result.reason == "api_version_locked"

    asyncio.run(run_test())


class GatedGeneration(StubGeneration):
    def __init__(self, response):
        super().__init__(response)
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def invoke_generation(self, request, *, headers):
        self.entered.set()
        await self.gate.wait()
        return await super().invoke_generation(request, headers=headers)


def test_second_advance_while_turn_in_flight_is_busy():
    async def run_test():
        generation = GatedGeneration(GenerationResponse(ok=True, data={"text": "The duel begins.\n계속"}))
        controller, state, _, _ = _controller(generation=generation)

        first = asyncio.create_task(controller.advance_turn(reason="ai"))
        await generation.entered.wait()
        assert controller.advancing is True

        busy = await controller.advance_turn(reason="ai")
        assert busy.status == "busy"
        assert busy.reason == "turn_inflight"

        generation.gate.set()
        result = await first
        assert result.status == "ok"
        assert state.state.turn == 2
        assert len(generation.calls) == 1
        assert controller.advancing is False

    asyncio.run(run_test())


def test_empty_generation_falls_back_to_sample_draw_response():
    async def run_test():
        controller, state, history, _ = _controller(GenerationResponse(ok=True, data={"text": "   "}))
        result = await controller.advance_turn()

        assert result.status == "ok"
        assert history.entries[1].content == "(샘플 응답)\n\n\n\n\n무승부"
        assert state.state.turn == 2

    asyncio.run(run_test())


def test_realtime_ai_advance_counts_as_viewer_vote():
    async def run_test():
        manager = RealtimePresenceManager()
        controller, _, _, _ = _controller(realtime=True, manager=manager)
        manager.begin_turn(1, ["u1", "u2"])

        await controller.advance_turn(reason="ai")

        entries = {entry.owner_id: entry for entry in manager.get_snapshot().entries}
        assert entries["u1"].inactivity_strikes == 0
        assert entries["u2"].inactivity_strikes == 1

    asyncio.run(run_test())
