from __future__ import annotations

import json
import math
import re
import time
from typing import Any, Iterable

_LINE_SPLIT = re.compile(r"\r?\n")


def now_ms() -> int:
    return int(time.time() * 1000)


def to_int(value: Any, *, minimum: int | None = None) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric):
        return None
    rounded = math.floor(numeric)
    if minimum is not None and rounded < minimum:
        return None
    return int(rounded)


def to_trimmed(value: Any) -> str | None:
    if value is None:
        return None
    trimmed = str(value).strip()
    return trimmed or None


def first_present(record: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def unique(values: Iterable[Any]) -> list[Any]:
    seen: set[Any] = set()
    out: list[Any] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def parse_json_dict(text: str | None) -> dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


def dump_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)


def preview(text: str | None, limit: int) -> str:
    return (text or "")[:limit]


def strip_outcome_footer(text: str | None, max_lines: int = 3) -> tuple[str, list[str]]:
    """Split the trailing outcome footer off a generated response.

    Up to ``max_lines`` non-blank trailing lines are collected as the footer;
    blank separator lines around them are dropped.
    """
    if not text:
        return "", []
    working = _LINE_SPLIT.split(str(text))
    footer: list[str] = []
    captured = 0
    index = len(working) - 1

    while index >= 0 and captured < max_lines:
        candidate = working[index]
        if not candidate.strip():
            del working[index]
            index -= 1
            continue
        footer.insert(0, candidate)
        del working[index]
        captured += 1

        while index - 1 >= 0 and not working[index - 1].strip():
            del working[index - 1]
            index -= 1

        index = len(working) - 1

    while working and not working[-1].strip():
        working.pop()

    return "\n".join(working), footer


_STATUS_TOKENS: tuple[tuple[str, frozenset[str]], ...] = (
    ("defeated", frozenset({"defeated", "lost", "dead", "eliminated", "retired", "패배", "탈락"})),
    ("spectating", frozenset({"spectator", "spectating", "observer", "관전"})),
    ("proxy", frozenset({"proxy", "stand-in", "standin", "ai", "bot", "대역"})),
    ("active", frozenset({"active", "playing", "alive", "ready", "참여", "in_battle"})),
    ("pending", frozenset({"pending", "waiting", "대기"})),
)


def normalize_status_token(value: Any) -> str | None:
    if not value:
        return None
    normalized = str(value).strip().lower()
    if not normalized:
        return None
    for canonical, tokens in _STATUS_TOKENS:
        if normalized in tokens:
            return canonical
    return normalized
