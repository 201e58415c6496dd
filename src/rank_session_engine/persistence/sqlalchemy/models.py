from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


RowIDType = BigInteger().with_variant(Integer, "sqlite")


class RankSession(TimestampMixin, Base):
    __tablename__ = "rank_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    game_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="active")
    mode: Mapped[str] = mapped_column(String(24), nullable=False, default="async")
    turn: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result: Mapped[str | None] = mapped_column(String(24), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    meta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','finalizing','finalized','voided')",
            name="rank_session_status_valid",
        ),
    )


Index("ix_rank_sessions_game_status_created", RankSession.game_id, RankSession.status, RankSession.created_at.desc())


class RankTurnLog(Base):
    __tablename__ = "rank_turn_logs"

    id: Mapped[int] = mapped_column(RowIDType, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("rank_sessions.id"), nullable=False)
    turn_number: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(24), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    visibility: Mapped[str] = mapped_column(String(16), nullable=False, default="public")
    meta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


Index("ix_rank_turn_logs_session_turn", RankTurnLog.session_id, RankTurnLog.turn_number)


class RankTimelineEvent(Base):
    __tablename__ = "rank_timeline_events"

    id: Mapped[int] = mapped_column(RowIDType, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("rank_sessions.id"), nullable=False)
    game_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_id: Mapped[str] = mapped_column(String(256), nullable=False)
    event_type: Mapped[str] = mapped_column(String(48), nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    strike: Mapped[int | None] = mapped_column(Integer, nullable=True)
    remaining: Mapped[int | None] = mapped_column(Integer, nullable=True)
    limit_value: Mapped[int | None] = mapped_column("limit", Integer, nullable=True)
    status: Mapped[str | None] = mapped_column(String(24), nullable=True)
    turn: Mapped[int | None] = mapped_column(Integer, nullable=True)
    event_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    context_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("session_id", "event_id", name="uq_rank_timeline_session_event"),
    )


Index("ix_rank_timeline_session_ts", RankTimelineEvent.session_id, RankTimelineEvent.event_timestamp)


class RankTurnStateEvent(Base):
    __tablename__ = "rank_turn_state_events"

    id: Mapped[int] = mapped_column(RowIDType, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("rank_sessions.id"), nullable=False)
    turn_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    deadline: Mapped[int] = mapped_column(RowIDType, nullable=False, default=0)
    remaining_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


Index("ix_rank_turn_state_session_id_desc", RankTurnStateEvent.session_id, RankTurnStateEvent.id.desc())


class RankBattleLog(Base):
    __tablename__ = "rank_battle_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("rank_sessions.id"), nullable=False)
    game_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    result: Mapped[str] = mapped_column(String(24), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    signature: Mapped[str] = mapped_column(String(128), nullable=False)
    draft_json: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("session_id", "signature", name="uq_rank_battle_log_session_signature"),
    )
