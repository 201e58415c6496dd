from __future__ import annotations

from typing import Sequence

from .participants import find_participant_by_slot
from .types import ActorContext, HeroSlot, Node, Participant, SlotBinding


def _node_slot_index(node: Node | None, slot_count: int) -> int:
    if node is not None:
        if node.slot_no is not None and node.slot_no > 0:
            return node.slot_no - 1
        if node.visible_slots:
            first = node.visible_slots[0]
            if first > 0:
                return first - 1
    return 0 if slot_count > 0 else -1


def resolve_actor_context(
    node: Node | None,
    slots: Sequence[HeroSlot | None],
    participants: Sequence[Participant],
) -> ActorContext:
    slot_index = _node_slot_index(node, len(slots))
    hero_slot = slots[slot_index] if 0 <= slot_index < len(slots) else None
    participant = find_participant_by_slot(participants, slot_index) if slot_index >= 0 else None
    return ActorContext(slot_index=slot_index, hero_slot=hero_slot, participant=participant)


def resolve_slot_binding(node: Node | None, actor_context: ActorContext) -> SlotBinding:
    visible = tuple(slot - 1 for slot in (node.visible_slots if node else ()) if slot > 0)
    limited = bool(visible)
    audience = {"audience": "slots", "slots": list(visible)} if limited else {"audience": "all"}
    return SlotBinding(
        slot_index=actor_context.slot_index,
        visible_slots=visible,
        has_limited_audience=limited,
        prompt_audience=dict(audience),
        response_audience=dict(audience),
    )


def normalize_hero_name(value: str | None) -> str:
    return " ".join((value or "").split())


def actor_display_names(actor_context: ActorContext) -> list[str]:
    participant = actor_context.participant
    if participant is not None and participant.hero_name:
        return [normalize_hero_name(participant.hero_name)]
    if actor_context.hero_slot is not None and actor_context.hero_slot.name:
        return [normalize_hero_name(actor_context.hero_slot.name)]
    return []


def build_user_action_persona(actor_context: ActorContext) -> tuple[str, str]:
    """Return the (system, prompt prefix) pair voicing the acting participant."""
    names = actor_display_names(actor_context)
    name = names[0] if names else "플레이어"
    role = actor_context.role or "참가자"
    system = (
        f"당신은 {role} 역할의 {name}입니다. "
        "플레이어가 제출한 행동을 캐릭터의 목소리로 서술하세요."
    )
    prompt = f"[{name}의 행동]"
    return system, prompt
