from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from roguemind.agents.economy import RESTORES
from roguemind.agents.stats import VITAL_NEEDS, MoodDimension, NeedType
from roguemind.sim.comms import Message, MessageType
from roguemind.sim.decision import (
    ACT_ATTACK,
    ACT_BROADCAST,
    ACT_BUY,
    ACT_EXPLORE,
    ACT_GREET,
    ACT_MOVE,
    ACT_UPGRADE,
    ACT_USE_ITEM,
    ACT_WAIT,
    AgentMode,
    Decision,
    DecisionConfig,
    DecisionContext,
    Priority,
)
from roguemind.sim.movement import Vec2
from roguemind.sim.world import EntityKind, RoomType


LOGGER = logging.getLogger("roguemind.sim.rules")

# service that restores each vital
NPC_FOR_NEED: dict[NeedType, str] = {
    NeedType.HEALTH: "doctor",
    NeedType.HUNGER: "restaurant",
    NeedType.THIRST: "restaurant",
}

_CRITICAL_REASONS: dict[NeedType, str] = {
    NeedType.HEALTH: "emergency: health critical and nothing to heal with, needs treatment",
    NeedType.HUNGER: "starving with no food at hand, needs food",
    NeedType.THIRST: "dehydrated with nothing to drink, needs water",
}

Guard = Callable[[DecisionContext, "DecisionEngine"], bool]
Action = Callable[[DecisionContext, "DecisionEngine"], Decision]


@dataclass(frozen=True)
class Rule:
    name: str
    guard: Guard
    action: Action


def _xy(position: Vec2) -> tuple[float, float]:
    return (position.x, position.y)


def _critical(ctx: DecisionContext) -> list[NeedType]:
    return ctx.needs.critical_needs()


def _unresolvable(ctx: DecisionContext) -> list[NeedType]:
    return [need for need in _critical(ctx) if not ctx.economy.can_restore(need)]


def _below_moderate(ctx: DecisionContext, config: DecisionConfig) -> list[NeedType]:
    return [need for need in VITAL_NEEDS if ctx.needs.pct(need) < config.moderate_fraction]


def _announce(ctx: DecisionContext, message_type: MessageType) -> tuple[list[str], MessageType | None]:
    # the earlier copy is still live on teammates' radios
    if message_type in ctx.recently_sent:
        return [], None
    return [ACT_BROADCAST], message_type


def _water_target(ctx: DecisionContext) -> tuple[float, float] | None:
    fountain = ctx.perception.visible_room_of_type(RoomType.FOUNTAIN.value)
    if fountain is not None:
        return _xy(fountain.center())
    return None


# -- 1. mortal emergency ----------------------------------------------------


def emergency_guard(ctx: DecisionContext, engine: "DecisionEngine") -> bool:
    critical = _critical(ctx)
    if not critical:
        return False
    return len(critical) >= 2 or bool(_unresolvable(ctx))


def emergency_action(ctx: DecisionContext, engine: "DecisionEngine") -> Decision:
    critical = _critical(ctx)
    calls, broadcast = _announce(ctx, MessageType.HELP)
    if len(critical) >= 2:
        return Decision(
            state=AgentMode.CRITICAL,
            priority=Priority.SURVIVAL,
            rationale="emergency: " + ", ".join(need.value for need in critical) + " critical, request rescue",
            actions=calls + [ACT_WAIT],
            broadcast=broadcast,
        )

    need = _unresolvable(ctx)[0]
    npc = ctx.perception.nearest(EntityKind.NPC, NPC_FOR_NEED[need])
    water = _water_target(ctx) if need == NeedType.THIRST else None
    if npc is not None and ctx.economy.currency >= engine.config.min_funds:
        return Decision(
            state=AgentMode.CRITICAL,
            priority=Priority.SURVIVAL,
            rationale=_CRITICAL_REASONS[need],
            actions=[ACT_MOVE, ACT_BUY],
            target=_xy(npc.position),
            target_id=npc.id,
        )
    if water is not None:
        return Decision(
            state=AgentMode.CRITICAL,
            priority=Priority.SURVIVAL,
            rationale=_CRITICAL_REASONS[need],
            actions=[ACT_MOVE],
            target=water,
        )
    return Decision(
        state=AgentMode.CRITICAL,
        priority=Priority.SURVIVAL,
        rationale=_CRITICAL_REASONS[need] + ", request rescue",
        actions=calls + [ACT_WAIT],
        broadcast=broadcast,
    )


# -- 2. message-reactive override -------------------------------------------


def _respondable(ctx: DecisionContext, config: DecisionConfig) -> Message | None:
    healthy = ctx.needs.pct(NeedType.HEALTH) >= config.respond_health_fraction
    thirsty = ctx.needs.pct(NeedType.THIRST) < config.moderate_fraction
    needy = bool(_below_moderate(ctx, config))
    funded = ctx.economy.currency >= config.min_funds

    if healthy:
        message = ctx.message_of(MessageType.HELP)
        if message is not None:
            return message
        message = ctx.message_of(MessageType.FOUND_PORTAL)
        if message is not None:
            return message
    if thirsty:
        message = ctx.message_of(MessageType.FOUND_WATER)
        if message is not None:
            return message
    if needy and funded:
        message = ctx.message_of(MessageType.FOUND_NPC)
        if message is not None:
            return message
    return None


def message_guard(ctx: DecisionContext, engine: "DecisionEngine") -> bool:
    return _respondable(ctx, engine.config) is not None


def message_action(ctx: DecisionContext, engine: "DecisionEngine") -> Decision:
    message = _respondable(ctx, engine.config)
    if message is None:
        return explore_action(ctx, engine)

    if message.type == MessageType.HELP:
        state, priority = AgentMode.SEEKING, Priority.COMBAT
        rationale = f"{message.sender_id} called for help, going to assist"
        announce, broadcast = _announce(ctx, MessageType.GOING_TO)
        actions = announce + [ACT_MOVE]
    elif message.type == MessageType.FOUND_PORTAL:
        state, priority = AgentMode.SEEKING, Priority.EXPLORATION
        rationale = f"{message.sender_id} found the portal"
        actions = [ACT_MOVE]
        broadcast = None
    elif message.type == MessageType.FOUND_WATER:
        state, priority = AgentMode.SEEKING, Priority.SURVIVAL
        rationale = f"thirsty and {message.sender_id} found water"
        actions = [ACT_MOVE]
        broadcast = None
    else:
        state, priority = AgentMode.SEEKING, Priority.SURVIVAL
        rationale = f"running low and {message.sender_id} found a trader"
        actions = [ACT_MOVE, ACT_BUY]
        broadcast = None

    return Decision(
        state=state,
        priority=priority,
        rationale=rationale,
        actions=actions,
        target=_xy(message.position),
        target_id=message.sender_id,
        message_id=message.id,
        broadcast=broadcast,
    )


# -- 3. opportunity -----------------------------------------------------------


def _can_fight(ctx: DecisionContext, config: DecisionConfig) -> bool:
    return bool(ctx.perception.hostiles) and ctx.economy.currency < config.wealth_target


def _can_invest(ctx: DecisionContext, config: DecisionConfig) -> bool:
    return ctx.economy.currency > config.comfort_threshold and bool(ctx.perception.npcs)


def opportunity_guard(ctx: DecisionContext, engine: "DecisionEngine") -> bool:
    if _critical(ctx):
        return False
    return _can_fight(ctx, engine.config) or _can_invest(ctx, engine.config)


def opportunity_action(ctx: DecisionContext, engine: "DecisionEngine") -> Decision:
    config = engine.config
    if _can_fight(ctx, config):
        hostile = ctx.perception.hostiles[0]
        return Decision(
            state=AgentMode.FIGHTING,
            priority=Priority.COMBAT,
            rationale=f"{len(ctx.perception.hostiles)} hostiles nearby and in good shape, fight for loot",
            actions=[ACT_ATTACK],
            target=_xy(hostile.position),
            target_id=hostile.id,
        )

    npc = ctx.perception.npcs[0]
    crowded = ctx.economy.fullness >= config.crowded_inventory_fraction
    return Decision(
        state=AgentMode.INTERACTING,
        priority=Priority.NORMAL,
        rationale="enough money saved, invest in " + ("capacity" if crowded else "equipment"),
        actions=[ACT_MOVE, ACT_UPGRADE if crowded else ACT_BUY],
        target=_xy(npc.position),
        target_id=npc.id,
    )


# -- 4. preventive resupply ---------------------------------------------------


def _resupply_need(ctx: DecisionContext, config: DecisionConfig) -> NeedType | None:
    funded = ctx.economy.currency >= config.min_funds
    for need in _below_moderate(ctx, config):
        if funded or ctx.economy.can_restore(need):
            return need
    return None


def resupply_guard(ctx: DecisionContext, engine: "DecisionEngine") -> bool:
    return _resupply_need(ctx, engine.config) is not None


def resupply_action(ctx: DecisionContext, engine: "DecisionEngine") -> Decision:
    need = _resupply_need(ctx, engine.config)
    if need is None:
        return explore_action(ctx, engine)

    if ctx.economy.can_restore(need):
        return Decision(
            state=AgentMode.SEEKING,
            priority=Priority.SURVIVAL,
            rationale=f"{need.value} getting low, use a {RESTORES[need].value}",
            actions=[f"{ACT_USE_ITEM}:{RESTORES[need].value}"],
        )

    npc = ctx.perception.nearest(EntityKind.NPC, NPC_FOR_NEED[need])
    target: tuple[float, float] | None = None
    target_id: str | None = None
    if npc is not None:
        target, target_id = _xy(npc.position), npc.id
    elif need == NeedType.THIRST:
        target = _water_target(ctx)
    return Decision(
        state=AgentMode.SEEKING,
        priority=Priority.SURVIVAL,
        rationale=f"{need.value} getting low, restock while funds allow",
        actions=[ACT_MOVE, ACT_BUY] if target is not None else [ACT_EXPLORE],
        target=target,
        target_id=target_id,
    )


# -- 5. social maintenance ----------------------------------------------------


def social_guard(ctx: DecisionContext, engine: "DecisionEngine") -> bool:
    config = engine.config
    social = ctx.needs.mood_value(MoodDimension.SOCIAL)
    if social < config.loneliness_threshold:
        return True
    return social < config.periodic_social_ceiling and engine.rng.random() < config.periodic_social_chance


def _discovery(ctx: DecisionContext, config: DecisionConfig) -> tuple[MessageType, tuple[float, float]] | None:
    perception = ctx.perception
    if perception.hostiles and ctx.needs.pct(NeedType.HEALTH) < config.moderate_fraction:
        return MessageType.HELP, _xy(ctx.position)
    portal = perception.visible_room_of_type(RoomType.PORTAL.value)
    if portal is not None:
        return MessageType.FOUND_PORTAL, _xy(portal.center())
    fountain = perception.visible_room_of_type(RoomType.FOUNTAIN.value)
    if fountain is not None:
        return MessageType.FOUND_WATER, _xy(fountain.center())
    if perception.npcs:
        return MessageType.FOUND_NPC, _xy(perception.npcs[0].position)
    return None


def social_action(ctx: DecisionContext, engine: "DecisionEngine") -> Decision:
    found = _discovery(ctx, engine.config)
    if found is not None and found[0] not in ctx.recently_sent:
        message_type, where = found
        return Decision(
            state=AgentMode.COMMUNICATING,
            priority=Priority.SURVIVAL if message_type == MessageType.HELP else Priority.NORMAL,
            rationale=f"share {message_type.value.replace('_', ' ')} with the team",
            actions=[ACT_BROADCAST],
            target=where,
            broadcast=message_type,
        )

    if ctx.perception.teammates:
        ally = ctx.perception.teammates[0]
        return Decision(
            state=AgentMode.COMMUNICATING,
            priority=Priority.NORMAL,
            rationale=f"feeling lonely, go talk to {ally.id}",
            actions=[ACT_MOVE, ACT_GREET],
            target=_xy(ally.position),
            target_id=ally.id,
        )

    if MessageType.COME_HERE not in ctx.recently_sent:
        return Decision(
            state=AgentMode.COMMUNICATING,
            priority=Priority.NORMAL,
            rationale="nobody around, call the team over",
            actions=[ACT_BROADCAST],
            target=_xy(ctx.position),
            broadcast=MessageType.COME_HERE,
        )

    return Decision(
        state=AgentMode.COMMUNICATING,
        priority=Priority.NORMAL,
        rationale="already called the team, keep moving while waiting",
        actions=[ACT_EXPLORE],
    )


# -- 6. default ---------------------------------------------------------------


def explore_action(ctx: DecisionContext, engine: "DecisionEngine") -> Decision:
    below_target = ctx.economy.currency < engine.config.wealth_target
    target: tuple[float, float] | None = None
    for room in ctx.perception.visible_rooms:
        if not room.explored and room != ctx.perception.current_room:
            target = _xy(room.center())
            break
    return Decision(
        state=AgentMode.EXPLORING,
        priority=Priority.NORMAL if below_target else Priority.EXPLORATION,
        rationale="explore for loot and money" if below_target else "wealth target met, look for the portal",
        actions=[ACT_EXPLORE],
        target=target,
    )


def _always(ctx: DecisionContext, engine: "DecisionEngine") -> bool:
    return True


DEFAULT_RULES: tuple[Rule, ...] = (
    Rule("mortal_emergency", emergency_guard, emergency_action),
    Rule("message_override", message_guard, message_action),
    Rule("opportunity", opportunity_guard, opportunity_action),
    Rule("preventive_resupply", resupply_guard, resupply_action),
    Rule("social_maintenance", social_guard, social_action),
    Rule("explore", _always, explore_action),
)


class DecisionEngine:
    """Ordered (guard, action) arbitration; holds no state between calls."""

    def __init__(
        self,
        config: DecisionConfig | None = None,
        rules: Sequence[Rule] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or DecisionConfig()
        self.rules: tuple[Rule, ...] = tuple(rules) if rules is not None else DEFAULT_RULES
        self.rng = rng or random.Random()

    def decide(self, ctx: DecisionContext | None) -> Decision | None:
        if ctx is None or ctx.is_dead:
            return None

        for rule in self.rules:
            try:
                matched = rule.guard(ctx, self)
            except Exception:
                LOGGER.exception("rule guard failed rule=%s agent=%s", rule.name, ctx.agent_id)
                continue
            if not matched:
                continue
            try:
                return rule.action(ctx, self)
            except Exception:
                LOGGER.exception("rule action failed rule=%s agent=%s", rule.name, ctx.agent_id)
                continue
        return explore_action(ctx, self)

    def matching_rule(self, ctx: DecisionContext) -> str | None:
        for rule in self.rules:
            if rule.guard(ctx, self):
                return rule.name
        return None


def should_consult_oracle(ctx: DecisionContext | None, config: DecisionConfig | None = None) -> bool:
    """Key moments only: survival pressure, real danger, lonely near NPCs, or deep depression."""
    if ctx is None or ctx.is_dead:
        return False
    config = config or DecisionConfig()

    if any(ctx.needs.pct(need) < config.oracle_vital_fraction for need in VITAL_NEEDS):
        return True
    if len(ctx.perception.hostiles) >= config.oracle_danger_hostiles:
        return True
    if ctx.needs.mood_value(MoodDimension.SOCIAL) < config.loneliness_threshold and ctx.perception.npcs:
        return True
    return ctx.needs.mood_value(MoodDimension.EMOTION) < config.oracle_depression
