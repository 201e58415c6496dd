from .db import build_engine, build_session_factory, create_schema
from .store import SQLAlchemySessionStore
from .uow import SQLAlchemyUnitOfWork

__all__ = [
    "build_engine",
    "build_session_factory",
    "create_schema",
    "SQLAlchemySessionStore",
    "SQLAlchemyUnitOfWork",
]
