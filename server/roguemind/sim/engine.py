from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Deque

from roguemind.agents.agent import Agent
from roguemind.agents.economy import ItemType
from roguemind.agents.needs import NeedsConfig
from roguemind.agents.stats import ChangeReason, ModifierKind, NeedType, StatModifier
from roguemind.envutil import env_bool, env_float, env_int
from roguemind.sim.comms import CommsConfig, CommunicationBus, MessageType
from roguemind.sim.decision import (
    ACT_ATTACK,
    ACT_BROADCAST,
    ACT_BUY,
    ACT_EXPLORE,
    ACT_GREET,
    ACT_MOVE,
    ACT_RETREAT,
    ACT_UPGRADE,
    ACT_USE_ITEM,
    AgentMode,
    Decision,
    DecisionConfig,
    DecisionContext,
)
from roguemind.sim.movement import (
    SAFE_POINT,
    Vec2,
    distance_2d,
    pick_wander_target,
    step_away_from,
    step_towards,
)
from roguemind.sim.oracle_decider import DialogueLine, OracleDecider
from roguemind.sim.perception import PerceptionConfig
from roguemind.sim.rules import NPC_FOR_NEED, DecisionEngine, should_consult_oracle
from roguemind.sim.world import Entity, EntityKind, Room, RoomGrid, RoomType, WorldGeometry


LOGGER = logging.getLogger("roguemind.sim.engine")

REACH_DISTANCE = 1.5
HOSTILE_BOUNTY = 15
HOSTILE_HIT = 8.0
SERVICE_PRICE = 15
SERVICE_RESTORE = 50.0
CAPACITY_PRICE = 100
CAPACITY_STEP = 4


def _utc_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _clamp_float(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


_LAYOUT: dict[tuple[int, int], RoomType] = {
    (0, 0): RoomType.SPAWN,
    (1, 0): RoomType.MERCHANT,
    (-1, 0): RoomType.FOUNTAIN,
    (0, 1): RoomType.RESTAURANT,
    (0, -1): RoomType.DOCTOR,
    (1, 1): RoomType.MONSTER,
    (-1, -1): RoomType.MONSTER,
    (-1, 1): RoomType.TREASURE,
    (1, -1): RoomType.BLACKSMITH,
    (-2, 0): RoomType.TAILOR,
    (2, 2): RoomType.PORTAL,
    (2, 0): RoomType.MONSTER,
    (0, 2): RoomType.MONSTER,
}

_SERVICE_ROOMS = {
    RoomType.MERCHANT,
    RoomType.RESTAURANT,
    RoomType.DOCTOR,
    RoomType.BLACKSMITH,
    RoomType.TAILOR,
}


def build_default_geometry() -> WorldGeometry:
    grid = RoomGrid()
    for x in range(-3, 3):
        for y in range(-3, 3):
            grid.add(Room(coord=(x, y), room_type=_LAYOUT.get((x, y), RoomType.EMPTY)))
    geometry = WorldGeometry(grid=grid)

    # partial walls between the spawn room and the monster rooms
    geometry.add_wall(Vec2(16.0, 18.0), Vec2(16.0, 30.0))
    geometry.add_wall(Vec2(-14.0, 0.0), Vec2(-2.0, 0.0))

    for coord, room_type in _LAYOUT.items():
        center = Room(coord=coord).center()
        if room_type in _SERVICE_ROOMS:
            geometry.add_entity(Entity(f"npc-{room_type.value}", EntityKind.NPC, center, tag=room_type.value))
        elif room_type == RoomType.MONSTER:
            for idx in range(2):
                offset = Vec2(-2.0 + idx * 4.0, 1.0)
                geometry.add_entity(
                    Entity(f"hostile-{coord[0]}-{coord[1]}-{idx}", EntityKind.HOSTILE, center + offset, tag="slime")
                )
        elif room_type == RoomType.FOUNTAIN:
            geometry.add_entity(Entity("item-fountain-water", EntityKind.ITEM, center, tag=ItemType.DRINK.value))
        elif room_type == RoomType.TREASURE:
            geometry.add_entity(Entity("item-treasure-chest", EntityKind.ITEM, center, tag="chest"))
    return geometry


@dataclass
class TickResult:
    events: list[dict] = field(default_factory=list)
    decisions: dict[str, Decision] = field(default_factory=dict)


@dataclass
class WorldState:
    agents: dict[str, Agent]
    event_log: Deque[dict]
    speed: float = 1.0
    tick: int = 0
    time: float = 0.0
    next_event_id: int = 0


class World:
    def __init__(
        self,
        geometry: WorldGeometry | None = None,
        *,
        needs_config: NeedsConfig | None = None,
        perception_config: PerceptionConfig | None = None,
        decision_config: DecisionConfig | None = None,
        comms_config: CommsConfig | None = None,
        oracle: OracleDecider | None = None,
        rng: random.Random | None = None,
        seed_agents: bool = True,
        history_limit: int = 300,
        move_speed: float = 3.0,
        oracle_cooldown_sec: float = 5.0,
        respawn_delay_sec: float = 10.0,
        auto_respawn: bool = True,
    ) -> None:
        self.state = WorldState(agents={}, event_log=deque(maxlen=history_limit))
        self.geometry = geometry or build_default_geometry()
        self.needs_config = needs_config or NeedsConfig()
        self.perception_config = perception_config or PerceptionConfig()
        self.bus = CommunicationBus(self.now, comms_config)
        self.engine = DecisionEngine(decision_config, rng=rng)
        self.oracle = oracle
        self.move_speed = move_speed
        self.oracle_cooldown_sec = oracle_cooldown_sec
        self.respawn_delay_sec = respawn_delay_sec
        self.auto_respawn = auto_respawn

        self._oracle_tasks: dict[str, asyncio.Task[Decision]] = {}
        self._oracle_ready_at: dict[str, float] = {}

        if seed_agents:
            self._build_agents()
        self._append_event("world", None, "World loaded, agents online.", ["system"])

    @classmethod
    def from_env(cls) -> "World":
        oracle = OracleDecider.from_env()
        return cls(
            needs_config=NeedsConfig.from_env(),
            perception_config=PerceptionConfig.from_env(),
            decision_config=DecisionConfig.from_env(),
            comms_config=CommsConfig.from_env(),
            oracle=oracle if oracle.enabled else None,
            history_limit=env_int("EVENT_HISTORY_LIMIT", 300, 50, 5000),
            move_speed=env_float("AGENT_MOVE_SPEED", 3.0, 0.1, 20.0),
            oracle_cooldown_sec=env_float("ORACLE_COOLDOWN_SEC", 5.0, 0.0, 600.0),
            respawn_delay_sec=env_float("RESPAWN_DELAY_SEC", 10.0, 0.0, 600.0),
            auto_respawn=env_bool("AUTO_RESPAWN", True),
        )

    # -- accessors -------------------------------------------------------

    def now(self) -> float:
        return self.state.time

    @property
    def speed(self) -> float:
        return self.state.speed

    @property
    def last_event_id(self) -> int:
        return self.state.next_event_id

    def _ordered_agents(self) -> list[Agent]:
        return [self.state.agents[agent_id] for agent_id in sorted(self.state.agents)]

    def get_agent(self, agent_id: str) -> Agent:
        agent = self.state.agents.get(agent_id)
        if agent is None:
            raise KeyError(agent_id)
        return agent

    # -- roster ----------------------------------------------------------

    def _build_agents(self) -> None:
        base = [
            ("a1", "Mira", "#f4a261"),
            ("a2", "Tobin", "#2a9d8f"),
            ("a3", "Ysolde", "#e76f51"),
            ("a4", "Garrick", "#457b9d"),
        ]
        for idx, (agent_id, name, avatar) in enumerate(base):
            self.add_agent(
                agent_id=agent_id,
                name=name,
                position=SAFE_POINT + Vec2(-3.0 + idx * 2.0, 0.0),
                avatar=avatar,
                announce=False,
            )

    def add_agent(
        self,
        agent_id: str | None,
        name: str,
        position: Vec2 | None = None,
        avatar: str | None = None,
        currency: int | None = None,
        announce: bool = True,
    ) -> Agent:
        if agent_id is None:
            seq = len(self.state.agents) + 1
            while f"a{seq}" in self.state.agents:
                seq += 1
            agent_id = f"a{seq}"
        if agent_id in self.state.agents:
            raise ValueError(f"agent {agent_id} already exists")

        agent = Agent(
            id=agent_id,
            name=name,
            position=position or SAFE_POINT,
            geometry=self.geometry,
            bus=self.bus,
            clock=self.now,
            needs_config=self.needs_config,
            perception_config=self.perception_config,
            avatar=avatar or "#8d99ae",
        )
        if currency is not None:
            agent.economy.currency = max(0, currency)
        agent.needs.on_death(lambda record, agent_id=agent_id: self._on_agent_death(agent_id, record.cause))
        agent.perception.on_room_discovered(lambda room, agent_id=agent_id: self._on_room_discovered(agent_id, room))
        agent.communicator.subscribe(
            lambda message, agent_id=agent_id: LOGGER.debug(
                "message received agent=%s type=%s from=%s", agent_id, message.type.value, message.sender_id
            )
        )
        self.state.agents[agent_id] = agent
        self._sync_teammate(agent)
        if announce:
            self._append_event("world", agent_id, f"{name} joined the run", ["system", "roster"])
        return agent

    def remove_agent(self, agent_id: str) -> Agent:
        agent = self.get_agent(agent_id)
        if len(self.state.agents) <= 1:
            raise ValueError("cannot remove the last agent")
        self._cancel_oracle(agent_id)
        self.bus.deregister(agent.communicator)
        self.geometry.remove_entity(agent_id)
        del self.state.agents[agent_id]
        self._append_event("world", agent_id, f"{agent.name} left the run", ["system", "roster"])
        return agent

    def _sync_teammate(self, agent: Agent) -> None:
        entity = self.geometry.entities.get(agent.id)
        if entity is None:
            self.geometry.add_entity(Entity(agent.id, EntityKind.TEAMMATE, agent.position, tag=agent.name))
            return
        entity.position = agent.position
        entity.active = not agent.is_dead

    # -- events ----------------------------------------------------------

    def _append_event(
        self,
        source_type: str,
        source_id: str | None,
        text: str,
        tags: list[str],
        target_id: str | None = None,
    ) -> dict:
        self.state.next_event_id += 1
        event = {
            "id": f"e{self.state.next_event_id}",
            "ts": _utc_iso(),
            "source_type": source_type,
            "source_id": source_id,
            "text": text,
            "tags": list(tags),
            "tick": self.state.tick,
        }
        if target_id is not None:
            event["target_id"] = target_id
        self.state.event_log.append(event)
        return event

    def events_since(self, event_id: int) -> list[dict]:
        return [event for event in self.state.event_log if int(event["id"][1:]) > event_id]

    def _on_room_discovered(self, agent_id: str, room: Room) -> None:
        self.geometry.grid.mark(room.coord, explored=True)
        self._append_event("agent", agent_id, f"discovered a {room.room_type.value} room", ["discovery"])

    def _on_agent_death(self, agent_id: str, cause: NeedType) -> None:
        self._cancel_oracle(agent_id)
        self._append_event("agent", agent_id, f"died of {cause.value}", ["death"])

    # -- tick ------------------------------------------------------------

    def step(self, dt: float = 1.0) -> TickResult:
        scaled = max(0.0, dt) * self.state.speed
        self.state.tick += 1
        self.state.time += scaled
        before_event_id = self.state.next_event_id

        result = TickResult()
        for agent in self._ordered_agents():
            if agent.is_dead:
                self._maybe_respawn(agent)
                continue

            agent.needs.tick(scaled)
            if agent.is_dead:
                self._sync_teammate(agent)
                continue
            agent.perception.refresh()

            decision = self._decide(agent)
            if decision is None:
                continue
            result.decisions[agent.id] = decision
            self._execute(agent, decision, scaled)
            self._sync_teammate(agent)

        self.bus.prune()
        result.events = self.events_since(before_event_id)
        return result

    def _maybe_respawn(self, agent: Agent) -> None:
        if not self.auto_respawn or agent.died_at is None:
            return
        if self.now() - agent.died_at < self.respawn_delay_sec:
            return
        self.respawn_agent(agent.id)

    def respawn_agent(self, agent_id: str) -> bool:
        agent = self.get_agent(agent_id)
        if not agent.respawn(SAFE_POINT):
            return False
        self._sync_teammate(agent)
        self._append_event("agent", agent_id, "respawned at the safe point", ["respawn"])
        return True

    # -- decisions -------------------------------------------------------

    def _decide(self, agent: Agent) -> Decision | None:
        ctx = agent.gather_context()
        decision = self.engine.decide(ctx)
        if decision is None:
            return None

        advice = self._collect_oracle(agent.id)
        if advice is not None and advice.source != "default" and decision.state != AgentMode.CRITICAL:
            decision = advice
        elif self.oracle is not None and should_consult_oracle(ctx, self.engine.config):
            self._schedule_oracle(agent.id, ctx)
        agent.last_decision = decision
        return decision

    def _schedule_oracle(self, agent_id: str, ctx: DecisionContext) -> None:
        if self.oracle is None or agent_id in self._oracle_tasks:
            return
        if self.now() < self._oracle_ready_at.get(agent_id, 0.0):
            return
        try:
            task = self.oracle.submit(ctx)
        except RuntimeError:
            # no running loop, e.g. stepping the world from a plain test
            return
        self._oracle_tasks[agent_id] = task
        self._oracle_ready_at[agent_id] = self.now() + self.oracle_cooldown_sec

    def _collect_oracle(self, agent_id: str) -> Decision | None:
        task = self._oracle_tasks.get(agent_id)
        if task is None or not task.done():
            return None
        del self._oracle_tasks[agent_id]
        if task.cancelled():
            return None
        exc = task.exception()
        if exc is not None:
            LOGGER.warning("oracle task failed agent=%s error=%r", agent_id, exc)
            return None
        return task.result()

    def _cancel_oracle(self, agent_id: str) -> None:
        task = self._oracle_tasks.pop(agent_id, None)
        if task is not None and not task.done():
            task.cancel()

    def cancel_all_oracle_tasks(self) -> None:
        for agent_id in list(self._oracle_tasks):
            self._cancel_oracle(agent_id)

    # -- executor --------------------------------------------------------

    def _resolve_target(self, agent: Agent, decision: Decision) -> Vec2 | None:
        if decision.target is not None:
            return decision.target_vec
        if decision.actions and all(item.startswith(ACT_USE_ITEM) for item in decision.actions):
            return None
        snapshot = agent.perception.snapshot()
        if decision.state == AgentMode.FIGHTING and snapshot.hostiles:
            return snapshot.hostiles[0].position
        if decision.state in (AgentMode.FLEEING, AgentMode.RESTING, AgentMode.CRITICAL):
            return SAFE_POINT
        if decision.state in (AgentMode.SEEKING, AgentMode.INTERACTING, AgentMode.TRADING) and snapshot.npcs:
            return snapshot.npcs[0].position
        return None

    def _execute(self, agent: Agent, decision: Decision, dt: float) -> None:
        target = self._resolve_target(agent, decision)
        moved = False
        action = "idle"

        for item in decision.actions:
            if item == ACT_BROADCAST and decision.broadcast is not None:
                self._do_broadcast(agent, decision.broadcast, target)
                action = "broadcast"
            elif item.startswith(ACT_USE_ITEM):
                _, _, item_type = item.partition(":")
                if item_type in {member.value for member in ItemType} and agent.use_item(ItemType(item_type)):
                    self._append_event("agent", agent.id, f"used a {item_type}", ["item"])
                    action = "use_item"
            elif item == ACT_ATTACK and decision.target_id:
                if self._in_reach(agent, target):
                    self._do_attack(agent, decision.target_id)
                    action = "attack"
            elif item == ACT_BUY and decision.target_id:
                if self._in_reach(agent, target):
                    self._do_buy(agent, decision.target_id)
                    action = "buy"
            elif item == ACT_UPGRADE and decision.target_id:
                if self._in_reach(agent, target):
                    self._do_upgrade(agent)
                    action = "upgrade"
            elif item == ACT_GREET and decision.target_id:
                if target is not None:
                    agent.face(target)
                partner = agent.talk_face_to_face()
                if partner is not None:
                    self._append_event("agent", agent.id, "had a face to face talk", ["social"], partner.agent_id)
                    action = "talk"
            elif item == ACT_RETREAT and not moved:
                hostiles = agent.perception.snapshot().hostiles
                if hostiles:
                    agent.position = step_away_from(agent.position, hostiles[0].position, self.move_speed * max(dt, 0.0))
                    moved = True
                    action = "retreat"

        if moved:
            target = None
        elif target is None and (ACT_EXPLORE in decision.actions or ACT_MOVE in decision.actions):
            target = pick_wander_target(agent.id, self.state.tick // 20)
        if target is not None and not self._in_reach(agent, target):
            self._move(agent, target, dt)
            moved = True
            if action == "idle":
                action = "move"

        if decision.message_id is not None and target is not None and self._in_reach(agent, target):
            agent.communicator.mark_read(decision.message_id)

        agent.needs.set_moving(moved)
        agent.last_action = action

    def _in_reach(self, agent: Agent, target: Vec2 | None) -> bool:
        return target is not None and distance_2d(agent.position, target) <= REACH_DISTANCE

    def _move(self, agent: Agent, target: Vec2, dt: float) -> None:
        if not agent.perception.can_reach(target):
            # go around through the room center; no real pathfinding here
            room = agent.perception.current_room()
            if room is not None:
                target = room.center()
        old = agent.position
        agent.position = step_towards(agent.position, target, self.move_speed * max(dt, 0.0))
        if distance_2d(old, agent.position) > 1e-6:
            agent.face(agent.position + (agent.position - old))

    def _do_broadcast(self, agent: Agent, message_type: MessageType, where: Vec2 | None) -> None:
        if agent.send(message_type, where):
            self._append_event("agent", agent.id, f"radio: {message_type.value}", ["radio", message_type.value])

    def _do_attack(self, agent: Agent, hostile_id: str) -> None:
        hostile = self.geometry.entities.get(hostile_id)
        if hostile is None or hostile.kind != EntityKind.HOSTILE or not hostile.active:
            return
        hostile.active = False
        agent.economy.add_currency(HOSTILE_BOUNTY)
        agent.needs.modify_stat(NeedType.HEALTH, -HOSTILE_HIT, ChangeReason.COMBAT)
        for other in self.state.agents.values():
            if other.id != agent.id:
                other.perception.notify_damage_dealt(agent.id)
        self._append_event("agent", agent.id, f"defeated {hostile.tag or 'a hostile'}", ["combat"], hostile_id)

    def _do_buy(self, agent: Agent, npc_id: str) -> None:
        npc = self.geometry.entities.get(npc_id)
        if npc is None or npc.kind != EntityKind.NPC:
            return
        if agent.economy.currency < SERVICE_PRICE:
            return
        served = [need for need, tag in NPC_FOR_NEED.items() if tag == npc.tag]
        if not served:
            served = [NeedType.ARMOR] if npc.tag in {"blacksmith", "tailor"} else []
        if not served:
            return
        agent.economy.add_currency(-SERVICE_PRICE)
        neediest = min(served, key=agent.needs.get_stat_percentage)
        agent.needs.modify_stat(neediest, SERVICE_RESTORE, ChangeReason.INTERACT)
        self._append_event("agent", agent.id, f"paid the {npc.tag} for {neediest.value}", ["trade"], npc_id)

    def _do_upgrade(self, agent: Agent) -> None:
        if agent.economy.currency < CAPACITY_PRICE:
            return
        agent.economy.add_currency(-CAPACITY_PRICE)
        agent.economy.capacity += CAPACITY_STEP
        self._append_event("agent", agent.id, "bought a bigger backpack", ["trade"])

    # -- controls --------------------------------------------------------

    def update_speed(self, speed: float) -> float:
        self.state.speed = _clamp_float(speed, 0.1, 5.0)
        return self.state.speed

    def send_message(self, agent_id: str, message_type: MessageType, position: Vec2 | None = None) -> dict:
        agent = self.get_agent(agent_id)
        if agent.is_dead:
            raise ValueError("dead agents cannot send messages")
        message = agent.communicator.send(message_type, position)
        if message is None:
            raise RuntimeError("agent is not on the communication bus")
        return self._append_event("agent", agent_id, f"radio: {message_type.value}", ["radio", "control"])

    def set_vision(self, agent_id: str, enabled: bool, duration: float) -> bool:
        agent = self.get_agent(agent_id)
        agent.perception.set_enhanced_vision(enabled, duration)
        return agent.perception.enhanced_vision

    def apply_modifier(
        self,
        agent_id: str,
        modifier_id: str,
        target: NeedType,
        kind: ModifierKind,
        magnitude: float,
        duration: float,
    ) -> StatModifier:
        agent = self.get_agent(agent_id)
        modifier = StatModifier(id=modifier_id, target=target, kind=kind, magnitude=magnitude, duration=duration)
        agent.needs.add_modifier(modifier)
        self._append_event("world", agent_id, f"modifier {modifier_id} applied to {target.value}", ["buff"])
        return modifier

    def remove_modifier(self, agent_id: str, modifier_id: str) -> bool:
        return self.get_agent(agent_id).needs.remove_modifier(modifier_id)

    def modify_stat(self, agent_id: str, need: NeedType, amount: float) -> float:
        agent = self.get_agent(agent_id)
        agent.needs.modify_stat(need, amount, ChangeReason.OTHER)
        return agent.needs.get_stat(need)

    # -- payloads --------------------------------------------------------

    def agents_state_payload(self) -> list[dict]:
        payload: list[dict] = []
        for agent in self._ordered_agents():
            item = agent.to_state_payload()
            item["tick"] = self.state.tick
            payload.append(item)
        return payload

    def agents_list_payload(self) -> list[dict]:
        return [agent.to_agent_summary() for agent in self._ordered_agents()]

    def oracle_stats_payload(self) -> dict[str, Any]:
        if self.oracle is None:
            return {"enabled": False, "pending": 0}
        stats = self.oracle.stats()
        stats["pending"] = len(self._oracle_tasks)
        return stats

    def state_payload(self) -> dict:
        return {
            "tick": self.state.tick,
            "time": round(self.state.time, 2),
            "speed": self.state.speed,
            "agents": self.agents_state_payload(),
            "world": self.geometry.to_payload(),
            "events": list(self.state.event_log)[-200:],
            "oracle_stats": self.oracle_stats_payload(),
        }

    def events_payload(self, limit: int = 200, agent_id: str | None = None) -> list[dict]:
        items = list(self.state.event_log)
        if agent_id:
            items = [
                event for event in items if event.get("source_id") == agent_id or event.get("target_id") == agent_id
            ]
        return items[-max(1, min(limit, 500)) :]

    def agent_details(self, agent_id: str) -> dict | None:
        agent = self.state.agents.get(agent_id)
        if agent is None:
            return None
        details = agent.to_details_payload()
        details["recent_events"] = self.events_payload(limit=10, agent_id=agent_id)
        return details

    def agent_decision(self, agent_id: str) -> Decision | None:
        agent = self.get_agent(agent_id)
        return self.engine.decide(agent.gather_context())

    async def agent_dialogue(
        self,
        agent_id: str,
        situation: str | None = None,
        previous: str | None = None,
    ) -> DialogueLine:
        agent = self.get_agent(agent_id)
        if agent.is_dead:
            raise ValueError("dead agents cannot talk")
        if self.oracle is None:
            raise RuntimeError("oracle is disabled")
        if not situation:
            situation = agent.last_decision.rationale if agent.last_decision else "exploring the dungeon"

        line = await self.oracle.request_dialogue(agent.name, situation, previous)
        if line.dialogue != "...":
            self._append_event("agent", agent_id, f'says: "{line.dialogue}"', ["dialogue", line.intent])
        return line
