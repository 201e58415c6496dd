from .adoption import PreflightInputs, RemoteSessionAdoption
from .battle_log import build_battle_log_draft
from .config import EngineConfig, GenerationSettings
from .drop_in import DropInQueueService
from .engine import TurnController
from .errors import (
    ApiKeyError,
    ApiVersionLockViolation,
    AuthenticationError,
    AuthorizationError,
    EmptyRosterError,
    GraphRoutingError,
    PreflightMismatch,
    TurnError,
)
from .history import TurnHistory
from .outcome import OutcomeProcessor
from .ports import (
    AuthTokenProvider,
    EdgeSelectorPort,
    GenerationPort,
    OutcomeLedgerPort,
    OutcomeParserPort,
    PromptCompilerPort,
    RealtimePort,
    UICallbacks,
)
from .preflight import prepare_session_roster, reconcile_participants
from .presence import RealtimePresenceManager
from .session import BattleSession
from .state import SessionState, SessionStateHolder
from .sync import RealtimeSync
from .turn_completion import RealtimeTurnCompletion
from .types import (
    Edge,
    Graph,
    Node,
    Participant,
    SessionInfo,
    TimelineEvent,
    TurnResult,
)

__all__ = [
    "BattleSession",
    "TurnController",
    "OutcomeProcessor",
    "RealtimeTurnCompletion",
    "RealtimePresenceManager",
    "DropInQueueService",
    "RealtimeSync",
    "RemoteSessionAdoption",
    "PreflightInputs",
    "SessionState",
    "SessionStateHolder",
    "TurnHistory",
    "EngineConfig",
    "GenerationSettings",
    "build_battle_log_draft",
    "prepare_session_roster",
    "reconcile_participants",
    "AuthTokenProvider",
    "EdgeSelectorPort",
    "GenerationPort",
    "OutcomeLedgerPort",
    "OutcomeParserPort",
    "PromptCompilerPort",
    "RealtimePort",
    "UICallbacks",
    "ApiKeyError",
    "ApiVersionLockViolation",
    "AuthenticationError",
    "AuthorizationError",
    "EmptyRosterError",
    "GraphRoutingError",
    "PreflightMismatch",
    "TurnError",
    "Edge",
    "Graph",
    "Node",
    "Participant",
    "SessionInfo",
    "TimelineEvent",
    "TurnResult",
]
