from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from .repos import BattleLogRepo, SessionRepo, TimelineEventRepo, TurnLogRepo, TurnStateEventRepo


class SQLAlchemyUnitOfWork:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory
        self.session: Session | None = None

    def __enter__(self) -> "SQLAlchemyUnitOfWork":
        self.session = self._session_factory()
        self.sessions = SessionRepo(self.session)
        self.turn_logs = TurnLogRepo(self.session)
        self.timeline = TimelineEventRepo(self.session)
        self.turn_states = TurnStateEventRepo(self.session)
        self.battle_logs = BattleLogRepo(self.session)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.session is None:
            return
        if exc_type is not None:
            self.rollback()
        self.session.close()

    def commit(self) -> None:
        assert self.session is not None
        self.session.commit()

    def rollback(self) -> None:
        assert self.session is not None
        self.session.rollback()
