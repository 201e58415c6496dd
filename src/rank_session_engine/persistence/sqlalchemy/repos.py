from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import RankBattleLog, RankSession, RankTimelineEvent, RankTurnLog, RankTurnStateEvent


class SessionRepo:
    def __init__(self, session: Session):
        self.session = session

    def get(self, session_id: str) -> RankSession | None:
        return self.session.get(RankSession, session_id)

    def create(
        self,
        game_id: str,
        owner_id: str | None,
        mode: str = "async",
        meta_json: str = "{}",
    ) -> RankSession:
        row = RankSession(game_id=game_id, owner_id=owner_id, mode=mode, meta_json=meta_json)
        self.session.add(row)
        self.session.flush()
        return row

    def latest_active(self, game_id: str, owner_id: str | None = None) -> RankSession | None:
        stmt = (
            select(RankSession)
            .where(RankSession.game_id == game_id)
            .where(RankSession.status == "active")
        )
        if owner_id:
            stmt = stmt.where(RankSession.owner_id == owner_id)
        stmt = stmt.order_by(RankSession.created_at.desc()).limit(1)
        return self.session.execute(stmt).scalar_one_or_none()

    def set_status(
        self,
        session_id: str,
        status: str,
        *,
        expected_status: str | None = None,
        values: dict[str, Any] | None = None,
    ) -> bool:
        update_values = dict(values or {})
        update_values["status"] = status
        update_values["updated_at"] = datetime.utcnow()
        stmt = update(RankSession).where(RankSession.id == session_id)
        if expected_status is not None:
            stmt = stmt.where(RankSession.status == expected_status)
        result = self.session.execute(stmt.values(**update_values))
        return result.rowcount == 1

    def bump_turn(self, session_id: str, turn_number: int) -> None:
        stmt = (
            update(RankSession)
            .where(RankSession.id == session_id)
            .where(RankSession.turn < turn_number)
            .values(turn=turn_number, updated_at=datetime.utcnow())
        )
        self.session.execute(stmt)


class TurnLogRepo:
    def __init__(self, session: Session):
        self.session = session

    def add(
        self,
        session_id: str,
        turn_number: int,
        role: str,
        content: str,
        public: bool = True,
        visibility: str = "public",
        meta_json: str = "{}",
    ) -> RankTurnLog:
        row = RankTurnLog(
            session_id=session_id,
            turn_number=turn_number,
            role=role,
            content=content,
            public=public,
            visibility=visibility,
            meta_json=meta_json,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def list_for_session(self, session_id: str, turn_number: int | None = None) -> list[RankTurnLog]:
        stmt = select(RankTurnLog).where(RankTurnLog.session_id == session_id)
        if turn_number is not None:
            stmt = stmt.where(RankTurnLog.turn_number == turn_number)
        stmt = stmt.order_by(RankTurnLog.id.asc())
        return list(self.session.execute(stmt).scalars().all())


class TimelineEventRepo:
    def __init__(self, session: Session):
        self.session = session

    def add_if_absent(self, **values: Any) -> bool:
        try:
            with self.session.begin_nested():
                self.session.add(RankTimelineEvent(**values))
                self.session.flush()
                return True
        except IntegrityError as exc:
            message = str(exc).lower()
            if (
                "uq_rank_timeline_session_event" in message
                or "rank_timeline_events.session_id, rank_timeline_events.event_id" in message
            ):
                return False
            raise

    def list_for_session(self, session_id: str, limit: int | None = None) -> list[RankTimelineEvent]:
        stmt = (
            select(RankTimelineEvent)
            .where(RankTimelineEvent.session_id == session_id)
            .order_by(RankTimelineEvent.event_timestamp.asc(), RankTimelineEvent.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars().all())


class TurnStateEventRepo:
    def __init__(self, session: Session):
        self.session = session

    def add(
        self,
        session_id: str,
        turn_number: int,
        status: str,
        deadline: int = 0,
        remaining_seconds: int = 0,
        payload_json: str = "{}",
    ) -> RankTurnStateEvent:
        row = RankTurnStateEvent(
            session_id=session_id,
            turn_number=turn_number,
            status=status,
            deadline=deadline,
            remaining_seconds=remaining_seconds,
            payload_json=payload_json,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def latest(self, session_id: str) -> RankTurnStateEvent | None:
        stmt = (
            select(RankTurnStateEvent)
            .where(RankTurnStateEvent.session_id == session_id)
            .order_by(RankTurnStateEvent.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()


class BattleLogRepo:
    def __init__(self, session: Session):
        self.session = session

    def add_once(
        self,
        session_id: str,
        game_id: str | None,
        result: str,
        reason: str | None,
        signature: str,
        draft_json: str,
    ) -> bool:
        try:
            with self.session.begin_nested():
                self.session.add(
                    RankBattleLog(
                        session_id=session_id,
                        game_id=game_id,
                        result=result,
                        reason=reason,
                        signature=signature,
                        draft_json=draft_json,
                    )
                )
                self.session.flush()
                return True
        except IntegrityError as exc:
            message = str(exc).lower()
            if (
                "uq_rank_battle_log_session_signature" in message
                or "rank_battle_logs.session_id, rank_battle_logs.signature" in message
            ):
                return False
            raise

    def list_for_session(self, session_id: str) -> list[RankBattleLog]:
        stmt = (
            select(RankBattleLog)
            .where(RankBattleLog.session_id == session_id)
            .order_by(RankBattleLog.created_at.asc())
        )
        return list(self.session.execute(stmt).scalars().all())
