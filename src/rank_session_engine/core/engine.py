from __future__ import annotations

import copy
import logging
from dataclasses import replace
from typing import Any, Callable, Mapping

from .actor_context import build_user_action_persona, resolve_actor_context, resolve_slot_binding
from .config import EngineConfig, GenerationSettings
from .errors import (
    API_KEY_ERROR_CODES,
    ApiKeyError,
    ApiVersionLockViolation,
    AuthenticationError,
    AuthorizationError,
    GenerationError,
    TurnError,
    is_api_key_error,
)
from .history import TurnHistory
from .outcome import OutcomeProcessor
from .participants import build_slots_from_participants
from .ports import AuthTokenProvider, GenerationPort, PromptCompilerPort
from .state import ApiVersionPinned, SessionStateHolder, SessionVoided, StatusChanged
from .turn_completion import RealtimeTurnCompletion
from .types import GenerationRequest, GenerationResponse, Graph, OutcomeInput, SessionInfo, TurnResult

logger = logging.getLogger(__name__)

VoidHook = Callable[[str, Mapping[str, Any]], None]

_VOID_MESSAGES = {
    "quota_exhausted": "사용 중인 API 키 한도가 모두 소진되어 세션이 무효 처리되었습니다. 새 키를 등록해 주세요.",
    "missing_user_api_key": "AI API 키가 입력되지 않아 세션이 중단되었습니다. 왼쪽 패널에서 키를 입력한 뒤 다시 시도해 주세요.",
}


def _error_from_payload(message: str, code: str | None, detail: str | None) -> TurnError:
    if code in API_KEY_ERROR_CODES:
        return ApiKeyError(message, reason=code, detail=detail)
    return GenerationError(message, code=code, detail=detail)


def extract_response_text(payload: Mapping[str, Any]) -> str:
    text = payload.get("text")
    if isinstance(text, str) and text.strip():
        return text.strip()
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        message = choices[0].get("message") if isinstance(choices[0], Mapping) else None
        content = message.get("content") if isinstance(message, Mapping) else None
        if isinstance(content, str) and content:
            return content
    content = payload.get("content")
    return content if isinstance(content, str) else ""


def server_log_payload(payload: Mapping[str, Any], response_role: str) -> dict[str, Any] | None:
    if not payload.get("logged"):
        return None
    out: dict[str, Any] = {"logged": True, "turn_number": payload.get("turn_number")}
    for entry in payload.get("entries") or []:
        if isinstance(entry, Mapping) and entry.get("role") == response_role and entry.get("summary_payload"):
            out["summary"] = copy.deepcopy(entry["summary_payload"])
            break
    return out


class TurnController:
    """Drives one turn at a time: prompt, generation, outcome processing."""

    def __init__(
        self,
        state: SessionStateHolder,
        graph: Graph,
        history: TurnHistory,
        processor: OutcomeProcessor,
        *,
        compiler: PromptCompilerPort,
        generation: GenerationPort,
        auth: AuthTokenProvider,
        realtime: RealtimeTurnCompletion | None = None,
        settings: GenerationSettings | None = None,
        config: EngineConfig | None = None,
        viewer_id: str | None = None,
        on_void: VoidHook | None = None,
    ):
        self._state = state
        self.graph = graph
        self._history = history
        self._processor = processor
        self._compiler = compiler
        self._generation = generation
        self._auth = auth
        self._realtime = realtime
        self.settings = settings or GenerationSettings()
        self._config = config or EngineConfig()
        self.viewer_id = viewer_id
        self._on_void = on_void
        self.session_info: SessionInfo | None = None
        self._advancing = False

    @property
    def advancing(self) -> bool:
        return self._advancing

    def update_settings(self, **changes: Any) -> GenerationSettings:
        self.settings = replace(self.settings, **changes)
        return self.settings

    def _reject(self, message: str, status: str = "rejected") -> TurnResult:
        self._state.dispatch(StatusChanged(message))
        return TurnResult(status=status, message=message)

    async def advance_turn(self, override_response: str | None = None, *, reason: str = "unspecified") -> TurnResult:
        if self._advancing:
            return TurnResult(status="busy", reason="turn_inflight")

        current = self._state.state
        if current.preflight:
            return self._reject('먼저 "게임 시작"을 눌러 주세요.')
        if current.voided:
            return self._reject("게임이 무효 처리되어 더 이상 진행할 수 없습니다.", status="voided")
        if current.finalized:
            return TurnResult(status="finalized", message=current.status_message, finalized=True, reason=current.finalize_reason)
        if not current.current_node_id:
            return self._reject("진행 가능한 노드가 없습니다.")
        node = self.graph.find_node(current.current_node_id)
        if node is None:
            return self._reject("현재 노드 정보를 찾을 수 없습니다.")

        participants = list(current.participants)
        slots = build_slots_from_participants(participants)
        actor_context = resolve_actor_context(node, slots, participants)
        slot_binding = resolve_slot_binding(node, actor_context)
        history_role = "user" if node.is_user_action else "assistant"
        acting_owner_id = actor_context.owner_id

        if node.is_user_action and (not self.viewer_id or acting_owner_id != self.viewer_id):
            error = AuthorizationError(
                "현재 차례의 플레이어만 행동을 제출할 수 있습니다.",
                owner_id=acting_owner_id,
                viewer_id=self.viewer_id,
            )
            return TurnResult(status="rejected", message=self._reject(str(error)).message, reason=error.code)

        if self._realtime is not None:
            if node.is_user_action and acting_owner_id:
                self._realtime.record_realtime_participation(acting_owner_id, "action")
            elif reason == "ai" and self.viewer_id:
                # pressing "next" on an AI turn counts as the viewer's vote
                self._realtime.record_realtime_participation(self.viewer_id, "vote")

        self._advancing = True
        self._state.dispatch(StatusChanged(""))
        settings = self.settings
        logger.debug("Advancing turn %s at node %s (reason=%s)", current.turn, node.id, reason)
        try:
            compiled = self._compiler.compile(
                node,
                slots,
                self._history.joined_text(only_public=False, last=self._config.prompt_history_limit),
                current.active_global_names,
                current.active_local_names,
                slot_binding.slot_index,
            )
            prompt_text = compiled.text
            system_prompt = settings.system_prompt
            effective_prompt = prompt_text
            if not current.realtime and node.is_user_action:
                persona_system, persona_prompt = build_user_action_persona(actor_context)
                system_prompt = "\n\n".join(part for part in (system_prompt, persona_system) if part)
                effective_prompt = f"{persona_prompt}\n{prompt_text}"

            response_text = override_response.strip() if isinstance(override_response, str) else ""
            server_payload = None

            if not response_text:
                if not settings.api_key:
                    return self._reject(
                        "AI API 키가 입력되지 않았습니다. 왼쪽 패널에서 키를 입력한 뒤 다시 시도해 주세요."
                    )
                lock = self._state.state.api_version_lock
                if current.realtime and lock and lock != settings.api_version:
                    raise ApiVersionLockViolation(
                        "실시간 매칭에서는 처음 선택한 API 버전을 변경할 수 없습니다.",
                        locked=lock,
                        requested=settings.api_version,
                    )
                if self.session_info is None:
                    raise TurnError("세션 정보를 확인할 수 없습니다. 페이지를 새로고침해 주세요.", code="missing_session")

                token = await self._auth.get_access_token()
                if not token:
                    raise AuthenticationError("세션 토큰을 확인할 수 없습니다.")

                is_gemini = settings.api_version == "gemini"
                request = GenerationRequest(
                    api_key=settings.api_key,
                    system=system_prompt,
                    prompt=effective_prompt,
                    api_version=settings.api_version,
                    gemini_mode=settings.gemini_mode if is_gemini else None,
                    gemini_model=settings.gemini_model if is_gemini else None,
                    session_id=self.session_info.id,
                    game_id=current.game_id,
                    response_role=history_role,
                    history=self._history.history_payload(self._config.history_payload_limit),
                )
                reply: GenerationResponse = await self._generation.invoke_generation(
                    request, headers={"Authorization": f"Bearer {token}"}
                )
                payload = reply.data or {}
                if not reply.ok:
                    detail = payload.get("detail")
                    detail = detail.strip() if isinstance(detail, str) and detail.strip() else None
                    message = payload.get("error") or detail or reply.error or "AI 호출에 실패했습니다."
                    raise _error_from_payload(message, payload.get("error"), detail)
                if payload.get("error"):
                    raise _error_from_payload(payload["error"], payload["error"], None)

                response_text = extract_response_text(payload)
                server_payload = server_log_payload(payload, history_role)
                if current.realtime and not self._state.state.api_version_lock:
                    self._state.dispatch(ApiVersionPinned(settings.api_version))

            if not response_text:
                response_text = self._config.fallback_response

            audience = slot_binding.prompt_audience.get("audience", "all")
            visible = slot_binding.visible_slots
            prompt_entry = self._history.push(
                "system",
                effective_prompt,
                audience=audience,
                slots=visible,
                meta={"slot_index": slot_binding.slot_index, "node_id": node.id},
            )
            response_entry = self._history.push(
                history_role,
                response_text,
                audience=audience,
                slots=visible,
                meta={"slot_index": slot_binding.slot_index, "node_id": node.id},
            )

            result = await self._processor.process(
                OutcomeInput(
                    response_text=response_text,
                    prompt_text=prompt_text,
                    prompt_entry=prompt_entry,
                    response_entry=response_entry,
                    node=node,
                    slot_binding=slot_binding,
                    actor_context=actor_context,
                    turn=current.turn,
                    session_info=self.session_info,
                    game_id=current.game_id,
                    server_payload=server_payload,
                )
            )
            after = self._state.state
            if result.finalized:
                return TurnResult(
                    status="finalized",
                    message=after.status_message or None,
                    finalized=True,
                    reason=after.finalize_reason,
                )
            if self._realtime is not None:
                self._realtime.begin_turn(after.turn)
            return TurnResult(status="ok", message=after.status_message or None)
        except Exception as exc:
            if is_api_key_error(exc):
                return self._void(exc, settings)
            if isinstance(exc, TurnError):
                logger.warning("Turn %s aborted: %s", current.turn, exc)
                return TurnResult(status="error", message=self._reject(str(exc), "error").message, reason=exc.code)
            logger.exception("Unexpected error while advancing turn %s", current.turn)
            message = str(exc) or "턴 진행 중 오류가 발생했습니다."
            return TurnResult(status="error", message=self._reject(message, "error").message, reason="unexpected")
        finally:
            self._advancing = False

    def _void(self, exc: Exception, settings: GenerationSettings) -> TurnResult:
        reason = getattr(exc, "code", None) or "api_key_error"
        message = _VOID_MESSAGES.get(reason) or str(exc) or "API 키 오류로 세션이 무효 처리되었습니다."
        logger.warning("Voiding session %s: %s", self._state.state.session_id, reason)
        self._state.dispatch(SessionVoided(message=message, reason=reason))
        if self._on_void is not None:
            self._on_void(
                message,
                {
                    "reason": reason,
                    "provider": settings.api_version,
                    "viewer_id": self.viewer_id,
                    "game_id": self._state.state.game_id,
                    "session_id": self.session_info.id if self.session_info else None,
                    "note": str(exc) or None,
                },
            )
        return TurnResult(status="voided", message=message, reason=reason)
