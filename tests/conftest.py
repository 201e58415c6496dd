from __future__ import annotations

import pytest

from rank_session_engine.persistence.sqlalchemy.db import build_engine, build_session_factory, create_schema
from rank_session_engine.persistence.sqlalchemy.store import SQLAlchemySessionStore
from rank_session_engine.persistence.sqlalchemy.uow import SQLAlchemyUnitOfWork


@pytest.fixture()
def session_factory():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    create_schema(engine)
    return build_session_factory(engine)


@pytest.fixture()
def uow_factory(session_factory):
    def _factory():
        return SQLAlchemyUnitOfWork(session_factory)

    return _factory


@pytest.fixture()
def store(uow_factory):
    return SQLAlchemySessionStore(uow_factory)


@pytest.fixture()
def started_session(store):
    return store.start_session("game-1", "owner-1")
