from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from .errors import EmptyRosterError
from .normalize import to_trimmed
from .ports import RealtimePort, SessionDirectoryPort, Subscription
from .preflight import PreflightResult, format_preflight_summary, prepare_session_roster
from .state import SessionStateHolder, StatusChanged
from .types import Participant, SessionInfo, SessionRow, SessionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreflightInputs:
    participants: tuple[Participant, ...] = ()
    slot_layout: tuple[Any, ...] = ()
    matching_metadata: Mapping[str, Any] = field(default_factory=dict)


LoadPreflightInputs = Callable[[], Awaitable[PreflightInputs]]
BootSession = Callable[[Sequence[Participant], SessionInfo], Optional[Awaitable[Any]]]
SessionInfoSink = Callable[[SessionInfo], None]


def session_table_topic(game_id: str) -> str:
    return f"rank_sessions:game:{game_id}"


def _session_info(row: SessionRow) -> SessionInfo:
    return SessionInfo(id=row.id, status=row.status or SessionStatus.ACTIVE, created_at=row.created_at, reused=True)


class RemoteSessionAdoption:
    """Lets a non-host client join a host-started session at most once."""

    def __init__(
        self,
        state: SessionStateHolder,
        *,
        game_id: str,
        directory: SessionDirectoryPort,
        load_preflight_inputs: LoadPreflightInputs,
        boot: BootSession,
        on_session_info: SessionInfoSink | None = None,
        host_owner_id: str | None = None,
        poll_interval_seconds: float = 2.0,
        clock: Callable[[], float] | None = None,
    ):
        self._state = state
        self.game_id = game_id
        self._directory = directory
        self._load_preflight_inputs = load_preflight_inputs
        self._boot = boot
        self._on_session_info = on_session_info
        self.host_owner_id = to_trimmed(host_owner_id)
        self._poll_interval = poll_interval_seconds
        self._clock = clock or time.monotonic
        self._last_polled: float | None = None
        self._polling = False
        self.adopted = False
        self.preflight_warning: str | None = None
        self._subscription: Subscription | None = None

    def _owner_mismatch(self, row: SessionRow) -> bool:
        return bool(self.host_owner_id and row.owner_id and row.owner_id != self.host_owner_id)

    async def adopt_remote_session(self, candidate: SessionRow | Mapping[str, Any] | None) -> bool:
        row = candidate if isinstance(candidate, SessionRow) else SessionRow.from_dict(dict(candidate or {}))
        if row is None:
            return False
        if row.status and row.status != SessionStatus.ACTIVE:
            return False
        if self._owner_mismatch(row):
            return False
        if self.adopted:
            return False

        info = _session_info(row)
        if not self._state.state.preflight:
            if self._on_session_info is not None:
                self._on_session_info(info)
            return False

        self.adopted = True
        try:
            inputs = await self._load_preflight_inputs()
            if not inputs.participants:
                self.adopted = False
                return False
            if self._on_session_info is not None:
                self._on_session_info(info)
            result: PreflightResult = prepare_session_roster(
                inputs.participants, inputs.slot_layout, inputs.matching_metadata
            )
        except EmptyRosterError:
            self.adopted = False
            self._state.dispatch(StatusChanged("참가자 구성이 유효하지 않아 게임에 참여할 수 없습니다."))
            return False
        except Exception:
            self.adopted = False
            logger.exception("Remote session %s failed preflight validation", row.id)
            self._state.dispatch(StatusChanged("매칭 데이터를 검증하지 못했습니다. 잠시 후 다시 시도해 주세요."))
            return False

        if result.removed:
            summary = format_preflight_summary(result.removed)
            self.preflight_warning = f"[후보정] 제외된 참가자:\n{summary}"

        self._state.dispatch(StatusChanged("호스트가 게임을 시작했습니다. 전투에 합류합니다."))
        try:
            booted = self._boot(result.participants, info)
            if asyncio.iscoroutine(booted):
                await booted
        except Exception:
            self.adopted = False
            logger.exception("Booting adopted session %s failed", row.id)
            self._state.dispatch(StatusChanged("게임에 합류하지 못했습니다. 잠시 후 다시 시도해 주세요."))
            return False
        logger.info("Adopted remote session %s for game %s", row.id, self.game_id)
        return True

    async def poll_once(self) -> bool:
        if self.adopted or self._polling or not self._state.state.preflight:
            return False
        now = self._clock()
        if self._last_polled is not None and now - self._last_polled < self._poll_interval:
            return False
        self._polling = True
        try:
            row = await self._directory.fetch_latest_active_session(self.game_id, owner_id=self.host_owner_id)
            if row is None and self.host_owner_id:
                row = await self._directory.fetch_latest_active_session(self.game_id)
            if row is None:
                return False
            return await self.adopt_remote_session(row)
        except Exception:
            logger.warning("Remote session lookup failed for game %s", self.game_id, exc_info=True)
            return False
        finally:
            self._polling = False
            self._last_polled = self._clock()

    async def watch(self, transport: RealtimePort) -> Subscription:
        await self.unwatch()
        self._subscription = await transport.subscribe(session_table_topic(self.game_id), self._handle_change)
        return self._subscription

    async def unwatch(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()

    async def _handle_change(self, change: Mapping[str, Any]) -> None:
        event_type = change.get("eventType") or change.get("event_type") or change.get("event") or ""
        if event_type == "DELETE":
            return
        record = change.get("new")
        if not isinstance(record, Mapping):
            return
        row = SessionRow.from_dict(dict(record))
        if row is None:
            return
        if row.game_id and row.game_id != str(self.game_id).strip():
            return
        if row.status and row.status != SessionStatus.ACTIVE:
            return
        if self._owner_mismatch(row):
            return
        await self.adopt_remote_session(row)
