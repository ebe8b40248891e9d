from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from roguemind.agents.economy import RESTORES, Economy, InventoryItem, ItemType
from roguemind.agents.needs import NeedsConfig, NeedsModel
from roguemind.agents.stats import ChangeReason, DeathRecord, MoodDimension, NeedType
from roguemind.sim.comms import CommunicationBus, Communicator, MessageType
from roguemind.sim.decision import Decision, DecisionContext
from roguemind.sim.movement import SAFE_POINT, UP, Vec2, clamp_position
from roguemind.sim.perception import PerceptionConfig, PerceptionSystem
from roguemind.sim.world import WorldGeometry


LOGGER = logging.getLogger("roguemind.agents.agent")

RECENTLY_SENT_SEC = 30.0
ITEM_RESTORE_AMOUNT = 40.0


def mood_label(emotion: float) -> str:
    if emotion <= -60:
        return "miserable"
    if emotion <= -20:
        return "sad"
    if emotion < 20:
        return "neutral"
    if emotion < 60:
        return "happy"
    return "excited"


def starting_economy() -> Economy:
    return Economy(
        currency=50,
        items=[
            InventoryItem("bread", 1, 10, ItemType.FOOD),
            InventoryItem("water flask", 1, 8, ItemType.DRINK),
        ],
    )


class Agent:
    """One NPC; its collaborators are built once here and never looked up again."""

    def __init__(
        self,
        id: str,
        name: str,
        position: Vec2,
        *,
        geometry: WorldGeometry,
        bus: CommunicationBus,
        clock: Callable[[], float],
        needs_config: NeedsConfig | None = None,
        perception_config: PerceptionConfig | None = None,
        economy: Economy | None = None,
        forward: Vec2 = UP,
        avatar: str = "#8d99ae",
    ) -> None:
        self.id = id
        self.name = name
        self.avatar = avatar
        self.position = clamp_position(position)
        self.forward = forward
        self._clock = clock

        self.needs = NeedsModel(needs_config)
        self.economy = economy if economy is not None else starting_economy()
        self.perception = PerceptionSystem(
            owner_id=id,
            geometry=geometry,
            position=lambda: self.position,
            clock=clock,
            config=perception_config,
        )
        self.communicator = Communicator(
            agent_id=id,
            position=lambda: self.position,
            forward=lambda: self.forward,
            clock=clock,
            needs=self.needs,
        )
        bus.register(self.communicator)
        self.comms_config = bus.config
        self.next_communication_at = 0.0
        self.next_face_to_face_at = 0.0

        self.last_decision: Decision | None = None
        self.last_action = "idle"
        self.died_at: float | None = None
        self.deaths = 0
        self.needs.on_death(self._on_death)

    @property
    def is_dead(self) -> bool:
        return self.needs.is_dead

    @property
    def mood_label(self) -> str:
        return mood_label(self.needs.get_mood(MoodDimension.EMOTION))

    def _on_death(self, record: DeathRecord) -> None:
        self.died_at = self._clock()
        self.deaths += 1
        self.last_action = "dead"
        LOGGER.info("agent died id=%s cause=%s", self.id, record.cause.value)

    def gather_context(self) -> DecisionContext:
        now = self._clock()
        recently_sent = frozenset(
            message.type
            for message in self.communicator.sent_messages()
            if now - message.timestamp < RECENTLY_SENT_SEC
        )
        return DecisionContext(
            agent_id=self.id,
            needs=self.needs.snapshot(),
            perception=self.perception.snapshot(),
            messages=tuple(self.communicator.live_messages(unread_only=True)),
            economy=self.economy.snapshot(),
            position=self.position,
            now=now,
            recently_sent=recently_sent,
        )

    def use_item(self, item_type: ItemType) -> bool:
        if self.is_dead:
            return False
        for need, restores in RESTORES.items():
            if restores != item_type:
                continue
            if self.economy.consume(item_type) is None:
                return False
            self.needs.modify_stat(need, ITEM_RESTORE_AMOUNT, ChangeReason.ITEM)
            return True
        return False

    def face(self, target: Vec2) -> None:
        direction = (target - self.position).normalized()
        if direction.length > 0:
            self.forward = direction

    def send(self, message_type: MessageType, position: Vec2 | None = None) -> bool:
        now = self._clock()
        if now < self.next_communication_at:
            return False
        if self.communicator.send(message_type, position) is None:
            return False
        self.next_communication_at = now + self.comms_config.communication_cooldown
        return True

    def talk_face_to_face(self) -> Communicator | None:
        now = self._clock()
        if now < self.next_face_to_face_at:
            return None
        partner = self.communicator.try_face_to_face()
        if partner is not None:
            self.next_face_to_face_at = now + self.comms_config.face_to_face_cooldown
        return partner

    def respawn(self, position: Vec2 = SAFE_POINT) -> bool:
        cause = self.needs.last_death.cause if self.needs.last_death else None
        if not self.needs.respawn():
            return False

        self._apply_death_penalty(cause)
        self.position = clamp_position(position)
        self.died_at = None
        self.last_action = "respawned"
        self.perception.reset()
        return True

    def _apply_death_penalty(self, cause: NeedType | None) -> None:
        config = self.needs.config
        if cause == NeedType.HEALTH:
            if config.clear_inventory_on_health_death:
                self.economy.clear_items()
            if config.clear_currency_on_health_death:
                self.economy.currency = 0
        elif cause == NeedType.HUNGER:
            if config.clear_currency_on_hunger_death:
                self.economy.currency = 0
        elif cause == NeedType.THIRST:
            if config.clear_drinks_on_thirst_death:
                self.economy.remove_types((ItemType.POTION, ItemType.DRINK))
        LOGGER.info("death penalty applied id=%s cause=%s", self.id, cause.value if cause else None)

    def to_state_payload(self) -> dict[str, Any]:
        decision = self.last_decision
        return {
            "id": self.id,
            "name": self.name,
            "pos": self.position.to_dict(),
            "forward": self.forward.to_dict(),
            "mood_label": self.mood_label,
            "is_dead": self.is_dead,
            "state": decision.state.value if decision else None,
            "priority": decision.priority.value if decision else None,
            "rationale": decision.rationale if decision else "",
            "decision_source": decision.source if decision else None,
            "last_action": self.last_action,
            "needs": {
                need.value: round(self.needs.get_stat(need), 1)
                for need in (NeedType.HEALTH, NeedType.HUNGER, NeedType.THIRST, NeedType.STAMINA)
            },
            "currency": self.economy.currency,
        }

    def to_agent_summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "avatar": self.avatar,
            "mood_label": self.mood_label,
            "is_dead": self.is_dead,
            "state": self.last_decision.state.value if self.last_decision else None,
        }

    def to_details_payload(self) -> dict[str, Any]:
        return {
            **self.to_agent_summary(),
            "pos": self.position.to_dict(),
            "needs": self.needs.to_payload(),
            "perception": self.perception.snapshot().to_payload(),
            "economy": self.economy.to_payload(),
            "messages": [message.to_payload() for message in self.communicator.recent_messages(10)],
            "decision": self.last_decision.model_dump(mode="json") if self.last_decision else None,
            "deaths": self.deaths,
        }
