from __future__ import annotations

from typing import Any

API_KEY_ERROR_CODES = frozenset(
    {
        "quota_exhausted",
        "missing_user_api_key",
        "invalid_api_key",
        "api_key_error",
        "api_key_revoked",
    }
)


class TurnError(Exception):
    """Base for errors that abort a single turn."""

    def __init__(self, message: str, *, code: str | None = None, detail: str | None = None):
        super().__init__(message)
        self.code = code
        self.detail = detail


class PreflightMismatch(TurnError):
    def __init__(self, message: str, *, participant: Any = None, mismatches: list[Any] | None = None):
        super().__init__(message, code="preflight_mismatch")
        self.participant = participant
        self.mismatches = list(mismatches or [])


class EmptyRosterError(PreflightMismatch):
    def __init__(self, message: str, *, removed: list[Any] | None = None):
        super().__init__(message)
        self.code = "empty_roster"
        self.removed = list(removed or [])


class AuthorizationError(TurnError):
    def __init__(self, message: str, *, owner_id: str | None = None, viewer_id: str | None = None):
        super().__init__(message, code="not_your_turn")
        self.owner_id = owner_id
        self.viewer_id = viewer_id


class AuthenticationError(TurnError):
    def __init__(self, message: str):
        super().__init__(message, code="auth_token_missing")


class ApiVersionLockViolation(TurnError):
    def __init__(self, message: str, *, locked: str, requested: str):
        super().__init__(message, code="api_version_locked")
        self.locked = locked
        self.requested = requested


class ApiKeyError(TurnError):
    def __init__(self, message: str, *, reason: str = "api_key_error", detail: str | None = None):
        super().__init__(message, code=reason, detail=detail)
        self.reason = reason


class GenerationError(TurnError):
    pass


class GraphRoutingError(TurnError):
    NO_PATH = "no_path"
    MISSING_NEXT = "missing_next"

    def __init__(self, message: str, *, reason: str, node_id: str | None = None):
        super().__init__(message, code=reason)
        self.reason = reason
        self.node_id = node_id


def is_api_key_error(exc: BaseException) -> bool:
    if isinstance(exc, ApiKeyError):
        return True
    code = getattr(exc, "code", None)
    return isinstance(code, str) and code in API_KEY_ERROR_CODES
