from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from roguemind.agents.mood import MoodModel
from roguemind.agents.stats import (
    PRIMARY_NEEDS,
    VITAL_NEEDS,
    ChangeReason,
    DeathRecord,
    ModifierKind,
    MoodDimension,
    NeedType,
    SocialInteraction,
    StatChange,
    StatModifier,
)
from roguemind.envutil import env_bool, env_float


LOGGER = logging.getLogger("roguemind.agents.needs")

STAT_EPSILON = 0.01
STAMINA_RESTLESS_MENTALITY = -50.0
RESTLESS_THIRST_MULTIPLIER = 1.5

_T = TypeVar("_T")


def _default_initial() -> dict[NeedType, float]:
    return {
        NeedType.HEALTH: 100.0,
        NeedType.HUNGER: 100.0,
        NeedType.THIRST: 100.0,
        NeedType.STAMINA: 100.0,
        NeedType.ARMOR: 0.0,
        NeedType.TOUGHNESS: 50.0,
        NeedType.BULLETS: 30.0,
        NeedType.ARROWS: 20.0,
        NeedType.MANA: 50.0,
    }


def _default_maximum() -> dict[NeedType, float]:
    return {
        NeedType.HEALTH: 100.0,
        NeedType.HUNGER: 100.0,
        NeedType.THIRST: 100.0,
        NeedType.STAMINA: 100.0,
        NeedType.ARMOR: 100.0,
        NeedType.TOUGHNESS: 100.0,
        NeedType.BULLETS: 999.0,
        NeedType.ARROWS: 999.0,
        NeedType.MANA: 100.0,
    }


def _default_critical() -> dict[NeedType, float]:
    # percent of max
    return {NeedType.HEALTH: 30.0, NeedType.HUNGER: 30.0, NeedType.THIRST: 30.0}


def _default_mood_impact() -> dict[NeedType, float]:
    return {
        NeedType.HEALTH: 0.3,
        NeedType.HUNGER: 0.2,
        NeedType.THIRST: 0.2,
        NeedType.STAMINA: 0.1,
    }


@dataclass
class NeedsConfig:
    initial: dict[NeedType, float] = field(default_factory=_default_initial)
    maximum: dict[NeedType, float] = field(default_factory=_default_maximum)
    critical_percent: dict[NeedType, float] = field(default_factory=_default_critical)
    mood_impact: dict[NeedType, float] = field(default_factory=_default_mood_impact)
    hunger_rate: float = 0.5
    thirst_rate: float = 0.8
    stamina_recovery_rate: float = 2.0
    stamina_depletion_rate: float = 5.0
    social_decay_rate: float = 0.01
    respawn_fraction: float = 0.5
    clear_inventory_on_health_death: bool = True
    clear_currency_on_health_death: bool = True
    clear_currency_on_hunger_death: bool = True
    clear_drinks_on_thirst_death: bool = True

    @classmethod
    def from_env(cls) -> "NeedsConfig":
        config = cls(
            hunger_rate=env_float("NEEDS_HUNGER_RATE", 0.5, 0.0, 50.0),
            thirst_rate=env_float("NEEDS_THIRST_RATE", 0.8, 0.0, 50.0),
            stamina_recovery_rate=env_float("NEEDS_STAMINA_RECOVERY_RATE", 2.0, 0.0, 100.0),
            stamina_depletion_rate=env_float("NEEDS_STAMINA_DEPLETION_RATE", 5.0, 0.0, 100.0),
            social_decay_rate=env_float("NEEDS_SOCIAL_DECAY_RATE", 0.01, 0.0, 1.0),
            respawn_fraction=env_float("NEEDS_RESPAWN_FRACTION", 0.5, 0.05, 1.0),
            clear_inventory_on_health_death=env_bool("NEEDS_CLEAR_INVENTORY_ON_HEALTH_DEATH", True),
            clear_currency_on_health_death=env_bool("NEEDS_CLEAR_CURRENCY_ON_HEALTH_DEATH", True),
            clear_currency_on_hunger_death=env_bool("NEEDS_CLEAR_CURRENCY_ON_HUNGER_DEATH", True),
            clear_drinks_on_thirst_death=env_bool("NEEDS_CLEAR_DRINKS_ON_THIRST_DEATH", True),
        )
        for need in VITAL_NEEDS:
            config.critical_percent[need] = env_float(f"NEEDS_CRITICAL_{need.name}", 30.0, 1.0, 99.0)
        return config

    def max_for(self, need: NeedType) -> float:
        return self.maximum.get(need, 100.0)

    def critical_fraction(self, need: NeedType) -> float:
        return self.critical_percent.get(need, 0.0) / 100.0


@dataclass(frozen=True)
class NeedsSnapshot:
    values: dict[NeedType, float]
    maxima: dict[NeedType, float]
    critical_fractions: dict[NeedType, float]
    mood: dict[MoodDimension, float]
    is_dead: bool = False
    is_moving: bool = False
    time_survived: float = 0.0

    def value(self, need: NeedType) -> float:
        return self.values.get(need, 0.0)

    def pct(self, need: NeedType) -> float:
        maximum = self.maxima.get(need, 0.0)
        if maximum <= 0:
            return 0.0
        return self.values.get(need, 0.0) / maximum

    def is_critical(self, need: NeedType) -> bool:
        threshold = self.critical_fractions.get(need)
        if threshold is None:
            return False
        return self.pct(need) < threshold

    def critical_needs(self) -> list[NeedType]:
        return [need for need in VITAL_NEEDS if self.is_critical(need)]

    def mood_value(self, dimension: MoodDimension) -> float:
        return self.mood.get(dimension, 0.0)

    def to_payload(self) -> dict[str, Any]:
        return {
            "values": {need.value: round(value, 2) for need, value in self.values.items()},
            "mood": {dim.value: round(value, 2) for dim, value in self.mood.items()},
            "critical": [need.value for need in self.critical_needs()],
            "is_dead": self.is_dead,
            "is_moving": self.is_moving,
            "time_survived": round(self.time_survived, 2),
        }


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class NeedsModel:
    def __init__(self, config: NeedsConfig | None = None) -> None:
        self.config = config or NeedsConfig()
        self._values: dict[NeedType, float] = {
            need: _clamp(value, 0.0, self.config.max_for(need)) for need, value in self.config.initial.items()
        }
        self._modifiers: dict[str, StatModifier] = {}
        self.mood = MoodModel(self.config)
        self.is_dead = False
        self.is_moving = False
        self.time_since_spawn = 0.0
        self.last_death: DeathRecord | None = None

        self._stat_listeners: list[Callable[[StatChange], None]] = []
        self._death_listeners: list[Callable[[DeathRecord], None]] = []
        self._respawn_listeners: list[Callable[[], None]] = []
        self._expiry_listeners: list[Callable[[StatModifier], None]] = []

    def on_stat_changed(self, callback: Callable[[StatChange], None]) -> None:
        self._stat_listeners.append(callback)

    def on_death(self, callback: Callable[[DeathRecord], None]) -> None:
        self._death_listeners.append(callback)

    def on_respawn(self, callback: Callable[[], None]) -> None:
        self._respawn_listeners.append(callback)

    def on_modifier_expired(self, callback: Callable[[StatModifier], None]) -> None:
        self._expiry_listeners.append(callback)

    # -- per-tick update -------------------------------------------------

    def tick(self, dt: float) -> None:
        if self.is_dead or not math.isfinite(dt) or dt <= 0:
            return

        self.time_since_spawn += dt
        self._apply_natural(dt)
        self._advance_modifiers(dt)
        self.mood.update(self.percentages(), dt)
        self._check_death()

    def set_moving(self, moving: bool) -> None:
        self.is_moving = moving

    def _apply_natural(self, dt: float) -> None:
        cfg = self.config
        self._apply(NeedType.HUNGER, self._base(NeedType.HUNGER) - cfg.hunger_rate * dt, ChangeReason.NATURAL)

        thirst_multiplier = RESTLESS_THIRST_MULTIPLIER if self.mood.mentality < STAMINA_RESTLESS_MENTALITY else 1.0
        self._apply(
            NeedType.THIRST,
            self._base(NeedType.THIRST) - cfg.thirst_rate * thirst_multiplier * dt,
            ChangeReason.NATURAL,
        )

        if self.is_moving:
            stamina_delta = -cfg.stamina_depletion_rate * dt
        else:
            stamina_delta = cfg.stamina_recovery_rate * dt
        self._apply(NeedType.STAMINA, self._base(NeedType.STAMINA) + stamina_delta, ChangeReason.NATURAL)

    def _advance_modifiers(self, dt: float) -> None:
        expired: list[str] = []
        for modifier_id, modifier in self._modifiers.items():
            modifier.advance(dt)
            if modifier.expired:
                expired.append(modifier_id)

        for modifier_id in expired:
            modifier = self._modifiers.pop(modifier_id, None)
            if modifier is None:
                continue
            LOGGER.info("modifier expired id=%s target=%s", modifier.id, modifier.target.value)
            self._emit(self._expiry_listeners, modifier)

    # -- stat access -----------------------------------------------------

    def _base(self, need: NeedType) -> float:
        return self._values.get(need, 0.0)

    def get_max(self, need: NeedType) -> float:
        return self.config.max_for(need)

    def get_stat(self, need: NeedType) -> float:
        if need not in self._values:
            return 0.0

        value = self._values[need]
        targeted = [modifier for modifier in self._modifiers.values() if modifier.target == need]
        for modifier in targeted:
            if modifier.kind == ModifierKind.FLAT:
                value += modifier.magnitude
        for modifier in targeted:
            if modifier.kind == ModifierKind.PERCENTAGE:
                value *= 1.0 + modifier.magnitude / 100.0

        if not math.isfinite(value):
            value = 0.0
        return _clamp(value, 0.0, self.get_max(need))

    def get_stat_percentage(self, need: NeedType) -> float:
        maximum = self.get_max(need)
        return self.get_stat(need) / maximum if maximum > 0 else 0.0

    def percentages(self) -> dict[NeedType, float]:
        return {need: self.get_stat_percentage(need) for need in self._values}

    def set_stat(self, need: NeedType, value: float, reason: ChangeReason = ChangeReason.OTHER) -> None:
        if self.is_dead or need not in self._values:
            return
        self._apply(need, value, reason)
        self._check_death()

    def modify_stat(self, need: NeedType, amount: float, reason: ChangeReason = ChangeReason.OTHER) -> None:
        if self.is_dead or need not in self._values:
            return
        self._apply(need, self._values[need] + amount, reason)
        self._check_death()

    def _apply(self, need: NeedType, value: float, reason: ChangeReason) -> None:
        if need not in self._values or not math.isfinite(value):
            return
        old = self._values[need]
        new = _clamp(value, 0.0, self.get_max(need))
        if abs(new - old) <= STAT_EPSILON:
            return
        self._values[need] = new
        self._emit(self._stat_listeners, StatChange(need=need, old_value=old, new_value=new, reason=reason))

    # -- modifiers -------------------------------------------------------

    def add_modifier(self, modifier: StatModifier) -> None:
        self._modifiers.pop(modifier.id, None)
        self._modifiers[modifier.id] = modifier

    def remove_modifier(self, modifier_id: str) -> bool:
        return self._modifiers.pop(modifier_id, None) is not None

    def active_modifiers(self) -> list[StatModifier]:
        return list(self._modifiers.values())

    # -- mood ------------------------------------------------------------

    def get_mood(self, dimension: MoodDimension) -> float:
        return self.mood.get(dimension)

    def describe_mood(self, dimension: MoodDimension) -> str:
        return self.mood.describe(dimension)

    def record_social_interaction(self, kind: SocialInteraction, weight: float = 1.0) -> float:
        if self.is_dead:
            return 0.0
        return self.mood.record_interaction(kind, weight)

    def modify_mood(self, dimension: MoodDimension, amount: float) -> None:
        if self.is_dead:
            return
        self.mood.adjust(dimension, amount)

    # -- death & respawn -------------------------------------------------

    def _check_death(self) -> None:
        if self.is_dead:
            return
        for need in VITAL_NEEDS:
            if need in self._values and self.get_stat(need) <= 0.0:
                self._die(need)
                return

    def _die(self, cause: NeedType) -> None:
        self.is_dead = True
        self.is_moving = False
        self.last_death = DeathRecord(cause=cause, time_survived=self.time_since_spawn)
        LOGGER.info("agent died cause=%s survived=%.1fs", cause.value, self.time_since_spawn)
        self._emit(self._death_listeners, self.last_death)

    def kill(self, cause: NeedType = NeedType.HEALTH) -> None:
        if not self.is_dead:
            self._die(cause)

    def respawn(self) -> bool:
        if not self.is_dead:
            LOGGER.warning("respawn requested while alive; ignored")
            return False

        fraction = self.config.respawn_fraction
        for need in PRIMARY_NEEDS:
            if need in self._values:
                self._values[need] = self.get_max(need) * fraction
        self.is_dead = False
        self.time_since_spawn = 0.0
        LOGGER.info("agent respawned fraction=%.2f", fraction)
        for callback in list(self._respawn_listeners):
            try:
                callback()
            except Exception:
                LOGGER.exception("respawn listener failed")
        return True

    # -- snapshots -------------------------------------------------------

    def snapshot(self) -> NeedsSnapshot:
        return NeedsSnapshot(
            values={need: self.get_stat(need) for need in self._values},
            maxima={need: self.get_max(need) for need in self._values},
            critical_fractions={need: self.config.critical_fraction(need) for need in VITAL_NEEDS},
            mood=self.mood.values(),
            is_dead=self.is_dead,
            is_moving=self.is_moving,
            time_survived=self.time_since_spawn,
        )

    def to_payload(self) -> dict[str, Any]:
        payload = self.snapshot().to_payload()
        payload["mood_labels"] = {dim.value: self.describe_mood(dim) for dim in MoodDimension}
        payload["mood_overall"] = round(self.mood.overall_score(), 2)
        payload["modifiers"] = [modifier.to_payload() for modifier in self._modifiers.values()]
        payload["death_cause"] = self.last_death.cause.value if self.is_dead and self.last_death else None
        return payload

    def _emit(self, listeners: Iterable[Callable[[_T], None]], payload: _T) -> None:
        for callback in list(listeners):
            try:
                callback(payload)
            except Exception:
                LOGGER.exception("needs listener failed payload=%r", payload)
