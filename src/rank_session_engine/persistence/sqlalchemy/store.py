from __future__ import annotations

import logging
from datetime import timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from ...core.normalize import dump_json, parse_json_dict, to_int
from ...core.timeline import map_timeline_event_to_row
from ...core.types import SessionInfo, SessionRow, SessionStatus, TimelineEvent
from .models import RankSession, RankTimelineEvent
from .uow import SQLAlchemyUnitOfWork

logger = logging.getLogger(__name__)

_ENTRY_KEYS = frozenset({"role", "content", "public", "visibility"})


def _session_info(row: RankSession, reused: bool) -> SessionInfo:
    return SessionInfo(
        id=row.id,
        status=row.status,
        created_at=row.created_at.isoformat() if row.created_at else None,
        reused=reused,
    )


def _session_row(row: RankSession) -> SessionRow:
    return SessionRow(
        id=row.id,
        status=row.status,
        owner_id=row.owner_id,
        created_at=row.created_at.isoformat() if row.created_at else None,
        game_id=row.game_id,
    )


def _timeline_event(row: RankTimelineEvent) -> TimelineEvent:
    stamp = row.event_timestamp
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    context = parse_json_dict(row.context_json)
    metadata = parse_json_dict(row.metadata_json)
    return TimelineEvent(
        id=row.event_id,
        type=row.event_type,
        owner_id=row.owner_id,
        turn=row.turn,
        timestamp=int(stamp.timestamp() * 1000),
        reason=row.reason,
        strike=row.strike,
        remaining=row.remaining,
        limit=row.limit_value,
        status=row.status,
        context=context or None,
        metadata=metadata or None,
    )


class SQLAlchemySessionStore:
    """Session, turn log, timeline and battle log storage over SQLAlchemy."""

    def __init__(self, uow_factory: Callable[[], SQLAlchemyUnitOfWork]):
        self._uow_factory = uow_factory

    def start_session(
        self,
        game_id: str,
        owner_id: str | None,
        *,
        mode: str = "async",
        reuse: bool = True,
    ) -> SessionInfo:
        with self._uow_factory() as uow:
            if reuse:
                existing = uow.sessions.latest_active(game_id, owner_id)
                if existing is not None:
                    return _session_info(existing, reused=True)
            row = uow.sessions.create(game_id=game_id, owner_id=owner_id, mode=mode)
            uow.commit()
            return _session_info(row, reused=False)

    def fetch_latest_active_session(self, game_id: str, owner_id: str | None = None) -> SessionRow | None:
        with self._uow_factory() as uow:
            row = uow.sessions.latest_active(game_id, owner_id)
            return _session_row(row) if row is not None else None

    def append_turn_entries(
        self,
        session_id: str,
        entries: Sequence[Mapping[str, Any]],
        turn_number: int,
    ) -> int:
        written = 0
        with self._uow_factory() as uow:
            for entry in entries:
                content = entry.get("content")
                if not isinstance(content, str) or not content.strip():
                    continue
                public = entry.get("public")
                uow.turn_logs.add(
                    session_id=session_id,
                    turn_number=turn_number,
                    role=str(entry.get("role") or "system"),
                    content=content,
                    public=public is not False,
                    visibility=str(entry.get("visibility") or ("public" if public is not False else "private")),
                    meta_json=dump_json({k: v for k, v in entry.items() if k not in _ENTRY_KEYS}),
                )
                written += 1
            uow.sessions.bump_turn(session_id, turn_number)
            uow.commit()
        return written

    def list_turn_entries(self, session_id: str, turn_number: int | None = None) -> list[dict[str, Any]]:
        with self._uow_factory() as uow:
            return [
                {
                    "turn_number": row.turn_number,
                    "role": row.role,
                    "content": row.content,
                    "public": row.public,
                    "visibility": row.visibility,
                    **parse_json_dict(row.meta_json),
                }
                for row in uow.turn_logs.list_for_session(session_id, turn_number)
            ]

    def append_timeline_events(
        self,
        session_id: str,
        events: Iterable[Any],
        *,
        game_id: str | None = None,
    ) -> int:
        inserted = 0
        with self._uow_factory() as uow:
            for event in events:
                row = map_timeline_event_to_row(event, session_id=session_id, game_id=game_id)
                if row is None:
                    continue
                stored = uow.timeline.add_if_absent(
                    session_id=session_id,
                    game_id=game_id,
                    event_id=row["event_id"],
                    event_type=row["event_type"],
                    owner_id=row["owner_id"],
                    reason=row["reason"],
                    strike=row["strike"],
                    remaining=row["remaining"],
                    limit_value=row["limit"],
                    status=row["status"],
                    turn=row["turn"],
                    event_timestamp=row["event_timestamp"].replace(tzinfo=None),
                    context_json=dump_json(row["context"] or {}),
                    metadata_json=dump_json(row["metadata"] or {}),
                )
                if stored:
                    inserted += 1
            uow.commit()
        return inserted

    def fetch_timeline_events(self, session_id: str, limit: int | None = None) -> list[TimelineEvent]:
        with self._uow_factory() as uow:
            return [_timeline_event(row) for row in uow.timeline.list_for_session(session_id, limit)]

    def record_turn_state(
        self,
        session_id: str,
        turn_number: int,
        status: str,
        *,
        deadline: int = 0,
        remaining_seconds: int = 0,
        payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        with self._uow_factory() as uow:
            row = uow.turn_states.add(
                session_id=session_id,
                turn_number=turn_number,
                status=status,
                deadline=to_int(deadline) or 0,
                remaining_seconds=to_int(remaining_seconds) or 0,
                payload_json=dump_json(dict(payload or {})),
            )
            uow.commit()
            return {
                "id": row.id,
                "session_id": session_id,
                "turn_number": turn_number,
                "status": status,
                "deadline": row.deadline,
                "remaining_seconds": row.remaining_seconds,
            }

    def complete_session(
        self,
        session_id: str,
        *,
        result: str | None = None,
        reason: str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> bool:
        with self._uow_factory() as uow:
            ok = uow.sessions.set_status(
                session_id,
                SessionStatus.FINALIZED,
                expected_status=SessionStatus.ACTIVE,
                values={"result": result, "reason": reason, "meta_json": dump_json(dict(payload or {}))},
            )
            if not ok:
                uow.rollback()
                logger.info("Session %s was not active; completion skipped", session_id)
                return False
            uow.commit()
            return True

    def void_session(self, session_id: str, reason: str | None = None) -> bool:
        with self._uow_factory() as uow:
            ok = uow.sessions.set_status(session_id, "voided", values={"reason": reason})
            uow.commit()
            return ok

    def save_battle_log(
        self,
        session_id: str,
        draft: Mapping[str, Any],
        *,
        signature: str,
        game_id: str | None = None,
    ) -> bool:
        meta = draft.get("meta") or {}
        with self._uow_factory() as uow:
            stored = uow.battle_logs.add_once(
                session_id=session_id,
                game_id=game_id,
                result=str(meta.get("result") or "unknown"),
                reason=meta.get("reason"),
                signature=signature,
                draft_json=dump_json(draft),
            )
            uow.commit()
            return stored

    def list_battle_logs(self, session_id: str) -> list[dict[str, Any]]:
        with self._uow_factory() as uow:
            return [parse_json_dict(row.draft_json) for row in uow.battle_logs.list_for_session(session_id)]
