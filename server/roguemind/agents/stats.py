from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class NeedType(str, Enum):
    HEALTH = "health"
    HUNGER = "hunger"
    THIRST = "thirst"
    STAMINA = "stamina"
    ARMOR = "armor"
    TOUGHNESS = "toughness"
    BULLETS = "bullets"
    ARROWS = "arrows"
    MANA = "mana"


VITAL_NEEDS: tuple[NeedType, ...] = (NeedType.HEALTH, NeedType.HUNGER, NeedType.THIRST)
PRIMARY_NEEDS: tuple[NeedType, ...] = VITAL_NEEDS + (NeedType.STAMINA,)


class MoodDimension(str, Enum):
    EMOTION = "emotion"  # -100 depressed .. 100 happy
    SOCIAL = "social"  # -100 lonely .. 100 warm
    MENTALITY = "mentality"  # -100 restless .. 100 calm


class ModifierKind(str, Enum):
    FLAT = "flat"
    PERCENTAGE = "percentage"


class ChangeReason(str, Enum):
    NATURAL = "natural"
    COMBAT = "combat"
    ITEM = "item"
    INTERACT = "interact"
    BUFF = "buff"
    DEBUFF = "debuff"
    DEATH = "death"
    OTHER = "other"


class SocialInteraction(str, Enum):
    RADIO = "radio"
    VOICE_TALK = "voice_talk"
    FACE_TO_FACE_LISTEN = "face_to_face_listen"
    FACE_TO_FACE_SPEAK = "face_to_face_speak"


@dataclass
class StatModifier:
    id: str
    target: NeedType
    kind: ModifierKind
    magnitude: float
    duration: float = -1.0
    remaining: float = field(default=0.0, init=False)

    def __post_init__(self) -> None:
        self.remaining = self.duration

    @property
    def permanent(self) -> bool:
        return self.duration <= 0

    @property
    def expired(self) -> bool:
        return not self.permanent and self.remaining <= 0

    def advance(self, dt: float) -> None:
        if not self.permanent:
            self.remaining -= dt

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "target": self.target.value,
            "kind": self.kind.value,
            "magnitude": self.magnitude,
            "duration": self.duration,
            "remaining": round(self.remaining, 2) if not self.permanent else None,
        }


@dataclass(frozen=True)
class StatChange:
    need: NeedType
    old_value: float
    new_value: float
    reason: ChangeReason

    @property
    def amount(self) -> float:
        return self.new_value - self.old_value


@dataclass(frozen=True)
class MoodChange:
    dimension: MoodDimension
    old_value: float
    new_value: float


@dataclass(frozen=True)
class DeathRecord:
    cause: NeedType
    time_survived: float
