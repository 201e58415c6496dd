from .core.config import EngineConfig, GenerationSettings
from .core.engine import TurnController
from .core.session import BattleSession
from .core.types import Graph, Participant, SessionInfo, TurnResult
from .realtime import LocalRealtimeHub

__all__ = [
    "BattleSession",
    "TurnController",
    "LocalRealtimeHub",
    "EngineConfig",
    "GenerationSettings",
    "Graph",
    "Participant",
    "SessionInfo",
    "TurnResult",
]
