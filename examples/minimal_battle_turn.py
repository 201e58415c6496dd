from __future__ import annotations

import asyncio
import json

from rank_session_engine import BattleSession, GenerationSettings, LocalRealtimeHub
from rank_session_engine.core.background import drain_background
from rank_session_engine.core.types import (
    CompiledPrompt,
    GenerationResponse,
    Graph,
    LedgerRecordResult,
    ParsedOutcome,
)
from rank_session_engine.persistence.sqlalchemy import (
    SQLAlchemySessionStore,
    SQLAlchemyUnitOfWork,
    build_engine,
    build_session_factory,
    create_schema,
)

GRAPH = Graph.from_dict(
    {
        "nodes": [
            {"id": "opening", "slot_no": 1, "is_start": True, "template": "{{slot1.name}} opens the duel."},
            {"id": "answer", "slot_no": 2, "template": "{{slot2.name}} answers."},
        ],
        "edges": [
            {"from": "opening", "to": "answer", "data": {"action": "continue"}},
            {"from": "answer", "to": None, "data": {"action": "win"}},
        ],
    }
)


class TemplateCompiler:
    def compile(self, node, slots, history_text, active_global_names, active_local_names, current_slot):
        text = node.template
        for slot in slots:
            if slot is not None:
                text = text.replace(f"{{{{slot{slot.slot_index + 1}.name}}}}", slot.name)
        return CompiledPrompt(text=text)


class DemoGeneration:
    async def invoke_generation(self, request, *, headers):
        return GenerationResponse(ok=True, data={"text": f"{request.prompt}\nThe crowd cheers.\n승리"})


class DemoAuth:
    async def get_access_token(self):
        return "demo-token"


class LastLineParser:
    def parse(self, response_text):
        return ParsedOutcome(last_line=response_text.splitlines()[-1])


class FirstEdge:
    def select(self, edges, context):
        return edges[0] if edges else None


class CountingLedger:
    def record(self, ledger, entry):
        ledger["entries"].append(entry)
        return LedgerRecordResult(changed=True)

    def build_snapshot(self, ledger):
        return {"turns": len(ledger["entries"])} if ledger is not None else None


class PrintUI:
    def show_status(self, message):
        print(f"[status] {message}")

    def append_log(self, entries):
        for entry in entries:
            print(f"[log] {entry['content']}")


async def main() -> None:
    engine = build_engine("sqlite+pysqlite:///:memory:")
    create_schema(engine)
    session_factory = build_session_factory(engine)
    store = SQLAlchemySessionStore(lambda: SQLAlchemyUnitOfWork(session_factory))

    session = BattleSession(
        game_id="arena-1",
        graph=GRAPH,
        store=store,
        compiler=TemplateCompiler(),
        generation=DemoGeneration(),
        auth=DemoAuth(),
        parser=LastLineParser(),
        edge_selector=FirstEdge(),
        ledger=CountingLedger(),
        viewer_id="player-1",
        game_name="Arena",
        realtime=True,
        transport=LocalRealtimeHub(),
        ledger_factory=lambda: {"entries": []},
        settings=GenerationSettings(api_key="demo-key", system_prompt="Narrate a short duel."),
        ui=PrintUI(),
    )
    info = await session.start(
        [
            {"ownerId": "player-1", "heroId": "hero-a", "heroName": "Aria", "role": "attack"},
            {"ownerId": "player-2", "heroId": "hero-b", "heroName": "Bex", "role": "defense"},
        ]
    )

    while not session.state.state.finalized:
        result = await session.advance_turn(reason="ai")
        print(f"turn result: {result.status}")
        if result.status not in ("ok", "finalized"):
            break

    await drain_background()
    await session.close()
    print(json.dumps(store.list_battle_logs(info.id)[0]["meta"], ensure_ascii=False, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
