from __future__ import annotations

from typing import Any, Iterable

from .types import HistoryEntry


class TurnHistory:
    """Ordered prompt/response transcript for one session."""

    def __init__(self) -> None:
        self._entries: list[HistoryEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    def begin_session(self, system_prompt: str = "") -> None:
        self._entries = []
        if system_prompt:
            self._entries.append(
                HistoryEntry(role="system", content=system_prompt, public=False, include_in_ai=True)
            )

    def push(
        self,
        role: str,
        content: str,
        *,
        public: bool = True,
        include_in_ai: bool = True,
        audience: str = "all",
        slots: Iterable[int] = (),
        meta: dict[str, Any] | None = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            role=role,
            content=content or "",
            public=public,
            include_in_ai=include_in_ai,
            audience=audience,
            slots=tuple(slots),
            meta=dict(meta or {}),
        )
        self._entries.append(entry)
        return entry

    def _tail(self, entries: list[HistoryEntry], last: int | None) -> list[HistoryEntry]:
        if last is None or last <= 0:
            return entries
        return entries[-last:]

    def joined_text(self, *, only_public: bool = False, last: int | None = None) -> str:
        picked = [entry for entry in self._entries if entry.public or not only_public]
        return "\n".join(entry.content for entry in self._tail(picked, last) if entry.content)

    def ai_memory(self, *, last: int | None = None) -> list[dict[str, str]]:
        picked = [entry for entry in self._entries if entry.include_in_ai]
        return [{"role": entry.role, "content": entry.content} for entry in self._tail(picked, last)]

    def history_payload(self, limit: int = 32) -> list[dict[str, Any]]:
        return [
            {
                "role": entry.role,
                "content": entry.content,
                "public": entry.public,
                "includeInAi": entry.include_in_ai,
            }
            for entry in self._tail(list(self._entries), limit)
        ]

    def visible_for_slot(
        self,
        slot_index: int,
        *,
        only_public: bool = False,
        last: int | None = None,
    ) -> list[HistoryEntry]:
        picked = []
        for entry in self._entries:
            if only_public and not entry.public:
                continue
            if entry.audience == "slots" and slot_index not in entry.slots:
                continue
            picked.append(entry)
        return self._tail(picked, last)

    def to_list(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]
