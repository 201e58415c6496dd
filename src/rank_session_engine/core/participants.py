"""Pure lookups over a participant roster."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Iterable, Mapping, Sequence

from .normalize import first_present, to_int, to_trimmed, unique
from .types import HeroSlot, Participant, ParticipantStatus

logger = logging.getLogger(__name__)

_INELIGIBLE_STATUSES = frozenset(
    {
        ParticipantStatus.DEFEATED,
        ParticipantStatus.SPECTATING,
        ParticipantStatus.PROXY,
        ParticipantStatus.PENDING,
    }
)


def coerce_participants(roster: Iterable[Participant | Mapping[str, Any] | None]) -> list[Participant]:
    out: list[Participant] = []
    for index, entry in enumerate(roster or []):
        if entry is None:
            continue
        if isinstance(entry, Participant):
            out.append(entry)
        elif isinstance(entry, Mapping):
            out.append(Participant.from_dict(dict(entry), index))
    return out


def derive_participant_owner_id(participant: Participant | Mapping[str, Any] | None) -> str | None:
    if participant is None:
        return None
    if isinstance(participant, Participant):
        return participant.owner_id
    owner = participant.get("owner")
    value = first_present(dict(participant), "owner_id", "ownerId", "ownerID")
    if value is None and isinstance(owner, Mapping):
        value = owner.get("id")
    return to_trimmed(value)


def resolve_slot_index(participant: Participant | None, fallback: int | None = None) -> int | None:
    if participant is None or participant.slot_index is None:
        return fallback
    return participant.slot_index


def find_participant_by_slot(roster: Sequence[Participant], slot_index: int) -> Participant | None:
    if slot_index is None or slot_index < 0:
        return None
    for participant in roster:
        if participant.slot_index == slot_index:
            return participant
    if all(participant.slot_index is None for participant in roster) and slot_index < len(roster):
        return roster[slot_index]
    return None


def find_participant_by_owner(roster: Sequence[Participant], owner_id: str | None) -> Participant | None:
    if not owner_id:
        return None
    for participant in roster:
        if participant.owner_id == owner_id:
            return participant
    return None


def fallback_display_name(owner_id: str) -> str:
    return f"플레이어 {owner_id[:6]}"


def build_owner_display_map(roster: Sequence[Participant]) -> dict[str, str]:
    display: dict[str, str] = {}
    for participant in roster:
        if not participant.owner_id or participant.owner_id in display:
            continue
        display[participant.owner_id] = participant.hero_name or fallback_display_name(participant.owner_id)
    return display


def display_name(owner_id: str | None, owner_display_map: Mapping[str, str] | None = None) -> str:
    if not owner_id:
        return "시스템"
    if owner_display_map and owner_display_map.get(owner_id):
        return owner_display_map[owner_id]
    return fallback_display_name(owner_id)


def collect_unique_owner_ids(roster: Sequence[Participant]) -> list[str]:
    return unique(p.owner_id for p in roster if p.owner_id)


def derive_eligible_owner_ids(roster: Sequence[Participant]) -> list[str]:
    return unique(
        p.owner_id for p in roster if p.owner_id and p.status not in _INELIGIBLE_STATUSES
    )


def participants_status_map(roster: Sequence[Participant]) -> dict[str, str]:
    return {p.owner_id: p.status for p in roster if p.owner_id}


def build_slots_from_participants(roster: Sequence[Participant]) -> list[HeroSlot | None]:
    """Lay participants out by slot index; the first claimant of a slot keeps it."""
    taken: dict[int, HeroSlot] = {}
    for index, participant in enumerate(roster):
        slot_index = resolve_slot_index(participant, index)
        if slot_index in taken:
            logger.warning(
                "Slot %s already held by %s; ignoring %s",
                slot_index,
                taken[slot_index].owner_id,
                participant.owner_id,
            )
            continue
        taken[slot_index] = HeroSlot(
            slot_index=slot_index,
            role=participant.role,
            name=participant.hero_name or "",
            hero_id=participant.hero_id,
            owner_id=participant.owner_id,
        )
    if not taken:
        return []
    return [taken.get(i) for i in range(max(taken) + 1)]


def with_status(roster: Sequence[Participant], owner_ids: Iterable[str], status: str) -> tuple[list[Participant], bool]:
    """Return a copy of the roster with ``status`` applied to the given owners.

    Participants already in ``status`` are kept as-is; the flag reports
    whether anything changed.
    """
    targets = {owner.strip() for owner in owner_ids if owner and owner.strip()}
    changed = False
    updated: list[Participant] = []
    for participant in roster:
        if participant.owner_id in targets and participant.status != status:
            updated.append(replace(participant, status=status))
            changed = True
        else:
            updated.append(participant)
    return updated, changed


def parse_slot_index(value: Any, fallback: int | None = None) -> int | None:
    numeric = to_int(value)
    if numeric is None or numeric < 0:
        return fallback
    return numeric
