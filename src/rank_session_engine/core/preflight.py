"""Pre-boot reconciliation of a client-supplied roster against expected roles.

Expected roles come from three sources, scanned in order: the static slot
layout, the matchmaking assignments, and any hero map embedded in the
matchmaking metadata. The first source to map a key wins; later sources
never overwrite it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .errors import EmptyRosterError
from .normalize import first_present, to_trimmed
from .participants import parse_slot_index
from .types import Participant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleMismatch:
    source: str
    key: str
    expected: str
    declared: str


@dataclass(frozen=True)
class RemovedParticipant:
    participant: Participant
    mismatches: tuple[RoleMismatch, ...]


@dataclass(frozen=True)
class PreflightResult:
    participants: list[Participant]
    removed: list[RemovedParticipant]


@dataclass
class RoleExpectations:
    slot_roles: dict[int, str] = field(default_factory=dict)
    hero_roles: dict[str, str] = field(default_factory=dict)
    owner_roles: dict[str, str] = field(default_factory=dict)

    def expect_slot(self, slot_index: int | None, role: str | None) -> None:
        if slot_index is None or not role:
            return
        self.slot_roles.setdefault(slot_index, role)

    def expect_hero(self, hero_id: str | None, role: str | None) -> None:
        if not hero_id or not role:
            return
        self.hero_roles.setdefault(hero_id, role)

    def expect_owner(self, owner_id: str | None, role: str | None) -> None:
        if not owner_id or not role:
            return
        self.owner_roles.setdefault(owner_id, role)

    def hits(self, slot_index: int | None, hero_id: str | None, owner_id: str | None) -> list[tuple[str, str, str]]:
        found: list[tuple[str, str, str]] = []
        if slot_index is not None and slot_index in self.slot_roles:
            found.append(("slot", str(slot_index), self.slot_roles[slot_index]))
        if hero_id and hero_id in self.hero_roles:
            found.append(("hero", hero_id, self.hero_roles[hero_id]))
        if owner_id and owner_id in self.owner_roles:
            found.append(("owner", owner_id, self.owner_roles[owner_id]))
        return found


_SLOT_KEYS = ("slot_no", "slotNo", "slot_index", "slotIndex")


def _role_of(record: Mapping[str, Any], fallback: str | None = None) -> str | None:
    return to_trimmed(first_present(dict(record), "role", "role_name", "roleName")) or fallback


def _same_role(left: str | None, right: str | None) -> bool:
    return (left or "").strip().casefold() == (right or "").strip().casefold()


def _nested_id(record: Mapping[str, Any], key: str) -> Any:
    nested = record.get(key)
    return nested.get("id") if isinstance(nested, Mapping) else None


def _hero_id_of(record: Mapping[str, Any]) -> str | None:
    value = first_present(dict(record), "hero_id", "heroId", "heroID")
    return to_trimmed(value if value is not None else _nested_id(record, "hero"))


def _owner_id_of(record: Mapping[str, Any]) -> str | None:
    value = first_present(dict(record), "owner_id", "ownerId", "ownerID")
    return to_trimmed(value if value is not None else _nested_id(record, "owner"))


def _scan_slot_layout(expectations: RoleExpectations, slot_layout: Iterable[Any]) -> None:
    for entry in slot_layout or []:
        if not isinstance(entry, Mapping):
            continue
        slot_index = parse_slot_index(first_present(dict(entry), "slot_index", "slotIndex", "slot_no", "slotNo"))
        role = _role_of(entry)
        if slot_index is None or not role:
            continue
        expectations.expect_slot(slot_index, role)
        expectations.expect_hero(
            to_trimmed(first_present(dict(entry), "hero_id", "heroId", "occupant_hero_id", "occupantHeroId")),
            role,
        )
        expectations.expect_owner(
            to_trimmed(
                first_present(
                    dict(entry), "hero_owner_id", "heroOwnerId", "occupant_owner_id", "occupantOwnerId", "ownerId"
                )
            ),
            role,
        )


def _scan_members(expectations: RoleExpectations, members: Any, role: str | None) -> None:
    for member in members or []:
        if not isinstance(member, Mapping):
            continue
        member_role = _role_of(member, role)
        expectations.expect_slot(parse_slot_index(first_present(dict(member), *_SLOT_KEYS)), member_role)
        expectations.expect_hero(_hero_id_of(member), member_role)
        expectations.expect_owner(_owner_id_of(member), member_role)


def _scan_assignments(expectations: RoleExpectations, assignments: Any) -> None:
    for assignment in assignments or []:
        if not isinstance(assignment, Mapping):
            continue
        role = _role_of(assignment)
        for role_slot in assignment.get("roleSlots") or assignment.get("role_slots") or []:
            if isinstance(role_slot, Mapping):
                slot_role = _role_of(role_slot, role)
                expectations.expect_slot(
                    parse_slot_index(first_present(dict(role_slot), "localIndex", "local_index", *_SLOT_KEYS)),
                    slot_role,
                )
                _scan_members(expectations, role_slot.get("members"), slot_role)
            else:
                expectations.expect_slot(parse_slot_index(role_slot), role)
        _scan_members(expectations, assignment.get("members"), role)


def _scan_hero_map(expectations: RoleExpectations, hero_map: Any) -> None:
    if isinstance(hero_map, Mapping):
        items: Iterable[tuple[Any, Any]] = hero_map.items()
    elif isinstance(hero_map, list):
        items = ((first_present(entry, "heroId", "hero_id", "id"), entry) for entry in hero_map if isinstance(entry, Mapping))
    else:
        return
    for hero_id, value in items:
        if isinstance(value, Mapping):
            role = to_trimmed(
                first_present(dict(value), "role", "assignmentRole", "matchRole", "expectedRole")
            )
            expectations.expect_hero(to_trimmed(hero_id), role)
            expectations.expect_owner(_owner_id_of(value), role)
            expectations.expect_slot(parse_slot_index(first_present(dict(value), *_SLOT_KEYS)), role)
        else:
            expectations.expect_hero(to_trimmed(hero_id), to_trimmed(value))


def build_role_expectations(
    slot_layout: Sequence[Any] | None,
    matching_metadata: Mapping[str, Any] | None,
) -> RoleExpectations:
    expectations = RoleExpectations()
    _scan_slot_layout(expectations, slot_layout or [])
    metadata = dict(matching_metadata or {})
    if isinstance(metadata.get("matching"), Mapping):
        metadata = {**dict(metadata["matching"]), **{k: v for k, v in metadata.items() if k != "matching"}}
    _scan_assignments(expectations, metadata.get("assignments"))
    _scan_hero_map(expectations, first_present(metadata, "heroMap", "hero_map"))
    return expectations


def _declared_slot(entry: Participant | Mapping[str, Any], participant: Participant) -> int | None:
    # roster position never counts as a declared slot
    if isinstance(entry, Mapping):
        return parse_slot_index(first_present(dict(entry), *_SLOT_KEYS))
    return participant.slot_index


def reconcile_participants(
    participants: Sequence[Participant | Mapping[str, Any]],
    slot_layout: Sequence[Any] | None = None,
    matching_metadata: Mapping[str, Any] | None = None,
) -> PreflightResult:
    expectations = build_role_expectations(slot_layout, matching_metadata)
    sanitized: list[Participant] = []
    removed: list[RemovedParticipant] = []
    for index, entry in enumerate(participants or []):
        if isinstance(entry, Participant):
            participant = entry
        elif isinstance(entry, Mapping):
            participant = Participant.from_dict(dict(entry), index)
        else:
            continue
        mismatches: tuple[RoleMismatch, ...] = ()
        if participant.role:
            hits = expectations.hits(_declared_slot(entry, participant), participant.hero_id, participant.owner_id)
            mismatches = tuple(
                RoleMismatch(source=source, key=key, expected=expected, declared=participant.role)
                for source, key, expected in hits
                if not _same_role(expected, participant.role)
            )
        if mismatches:
            removed.append(RemovedParticipant(participant=participant, mismatches=mismatches))
        else:
            sanitized.append(participant)
    if removed:
        logger.warning("Preflight removed %d participant(s):\n%s", len(removed), format_preflight_summary(removed))
    return PreflightResult(participants=sanitized, removed=removed)


def format_preflight_summary(removed: Sequence[RemovedParticipant]) -> str:
    lines: list[str] = []
    for entry in removed:
        participant = entry.participant
        label = participant.hero_name or participant.hero_id or "알 수 없는 영웅"
        details = ", ".join(
            f"{m.source}:{m.key} 기대 역할 {m.expected} / 선언 역할 {m.declared or '없음'}" for m in entry.mismatches
        )
        lines.append(f"- {label} (소유자 {participant.owner_id or '알 수 없음'}): {details}")
    return "\n".join(lines)


def prepare_session_roster(
    participants: Sequence[Participant | Mapping[str, Any]],
    slot_layout: Sequence[Any] | None = None,
    matching_metadata: Mapping[str, Any] | None = None,
) -> PreflightResult:
    """Reconcile the roster and refuse to boot a session with nobody left in it."""
    result = reconcile_participants(participants, slot_layout, matching_metadata)
    if not result.participants:
        raise EmptyRosterError("역할에 맞는 참가자를 찾을 수 없어 게임을 시작할 수 없습니다.", removed=result.removed)
    return result
