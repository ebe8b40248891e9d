from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from roguemind.agents.economy import EconomySnapshot
from roguemind.agents.needs import NeedsSnapshot
from roguemind.envutil import env_float, env_int
from roguemind.sim.comms import Message, MessageType
from roguemind.sim.movement import Vec2
from roguemind.sim.perception import EMPTY_SNAPSHOT, PerceptionSnapshot


class AgentMode(str, Enum):
    IDLE = "idle"
    EXPLORING = "exploring"
    FIGHTING = "fighting"
    FLEEING = "fleeing"
    SEEKING = "seeking"
    TRADING = "trading"
    INTERACTING = "interacting"
    COMMUNICATING = "communicating"
    RESTING = "resting"
    CRITICAL = "critical"


class Priority(str, Enum):
    NORMAL = "normal"
    SURVIVAL = "survival"
    COMBAT = "combat"
    EXPLORATION = "exploration"


DecisionSource = Literal["rules", "oracle", "cache", "default"]

# action vocabulary understood by the executor
ACT_EXPLORE = "explore"
ACT_MOVE = "move_to_target"
ACT_ATTACK = "attack"
ACT_RETREAT = "retreat"
ACT_BUY = "buy"
ACT_UPGRADE = "upgrade_capacity"
ACT_USE_ITEM = "use_item"
ACT_BROADCAST = "broadcast"
ACT_GREET = "greet"
ACT_WAIT = "wait_for_rescue"


class Decision(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    state: AgentMode
    priority: Priority = Priority.NORMAL
    rationale: str = Field(default="", max_length=280)
    actions: list[str] = Field(default_factory=list, max_length=8)
    target: tuple[float, float] | None = None
    target_id: str | None = Field(default=None, max_length=64)
    message_id: int | None = None
    broadcast: MessageType | None = None
    source: DecisionSource = "rules"

    @field_validator("actions")
    @classmethod
    def strip_actions(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item and item.strip()]

    @property
    def target_vec(self) -> Vec2 | None:
        if self.target is None:
            return None
        return Vec2(self.target[0], self.target[1])


def default_decision(reason: str = "no usable advice, keep exploring") -> Decision:
    return Decision(
        state=AgentMode.EXPLORING,
        priority=Priority.NORMAL,
        rationale=reason,
        actions=[ACT_EXPLORE],
        source="default",
    )


@dataclass
class DecisionConfig:
    wealth_target: int = 200
    comfort_threshold: int = 150
    moderate_fraction: float = 0.5
    respond_health_fraction: float = 0.5
    min_funds: int = 20
    loneliness_threshold: float = -40.0
    periodic_social_ceiling: float = 10.0
    periodic_social_chance: float = 0.1
    crowded_inventory_fraction: float = 0.8
    oracle_vital_fraction: float = 0.4
    oracle_danger_hostiles: int = 2
    oracle_depression: float = -60.0

    @classmethod
    def from_env(cls) -> "DecisionConfig":
        return cls(
            wealth_target=env_int("DECISION_WEALTH_TARGET", 200, 1, 100_000),
            comfort_threshold=env_int("DECISION_COMFORT_THRESHOLD", 150, 1, 100_000),
            moderate_fraction=env_float("DECISION_MODERATE_FRACTION", 0.5, 0.05, 0.95),
            respond_health_fraction=env_float("DECISION_RESPOND_HEALTH_FRACTION", 0.5, 0.05, 1.0),
            min_funds=env_int("DECISION_MIN_FUNDS", 20, 0, 100_000),
            loneliness_threshold=env_float("DECISION_LONELINESS_THRESHOLD", -40.0, -100.0, 100.0),
            periodic_social_ceiling=env_float("DECISION_PERIODIC_SOCIAL_CEILING", 10.0, -100.0, 100.0),
            periodic_social_chance=env_float("DECISION_PERIODIC_SOCIAL_CHANCE", 0.1, 0.0, 1.0),
            oracle_vital_fraction=env_float("DECISION_ORACLE_VITAL_FRACTION", 0.4, 0.05, 0.95),
            oracle_danger_hostiles=env_int("DECISION_ORACLE_DANGER_HOSTILES", 2, 1, 50),
            oracle_depression=env_float("DECISION_ORACLE_DEPRESSION", -60.0, -100.0, 0.0),
        )


@dataclass(frozen=True)
class DecisionContext:
    agent_id: str
    needs: NeedsSnapshot
    perception: PerceptionSnapshot = EMPTY_SNAPSHOT
    messages: tuple[Message, ...] = ()
    economy: EconomySnapshot = field(default_factory=EconomySnapshot)
    position: Vec2 = Vec2(0.0, 0.0)
    now: float = 0.0
    recently_sent: frozenset[MessageType] = frozenset()

    @property
    def is_dead(self) -> bool:
        return self.needs.is_dead

    def message_of(self, message_type: MessageType) -> Message | None:
        for message in self.messages:
            if message.type == message_type and message.sender_id != self.agent_id:
                return message
        return None

    def summary(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "needs": self.needs.to_payload(),
            "hostiles": len(self.perception.hostiles),
            "npcs": [seen.tag for seen in self.perception.npcs],
            "currency": self.economy.currency,
            "messages": [message.type.value for message in self.messages],
        }
