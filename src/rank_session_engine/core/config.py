from __future__ import annotations

from dataclasses import dataclass

FALLBACK_RESPONSE = "\n".join(["(샘플 응답)", "", "", "", "", "무승부"])


@dataclass(frozen=True)
class EngineConfig:
    warning_limit: int = 3
    preview_chars: int = 240
    footer_lines: int = 3
    prompt_history_limit: int = 12
    history_payload_limit: int = 32
    routing_history_limit: int = 5
    remote_poll_interval_seconds: float = 2.0
    fallback_response: str = FALLBACK_RESPONSE


@dataclass(frozen=True)
class GenerationSettings:
    api_key: str = ""
    api_version: str = "gemini"
    gemini_mode: str | None = None
    gemini_model: str | None = None
    system_prompt: str = ""
