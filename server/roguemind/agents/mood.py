from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

from roguemind.agents.stats import MoodChange, MoodDimension, NeedType, SocialInteraction

if TYPE_CHECKING:
    from roguemind.agents.needs import NeedsConfig


LOGGER = logging.getLogger("roguemind.agents.mood")

MOOD_MIN = -100.0
MOOD_MAX = 100.0
MOOD_NEUTRAL = 50.0
MOOD_EPSILON = 0.1

EMOTION_RATE = 0.5
MENTALITY_RATE = 0.3
SOCIAL_IDLE_SEC = 60.0
LONELY_THRESHOLD = -50.0
LOW_STAMINA_FRACTION = 0.2

INTERACTION_BOOSTS: dict[SocialInteraction, float] = {
    SocialInteraction.RADIO: 2.0,
    SocialInteraction.VOICE_TALK: 5.0,
    SocialInteraction.FACE_TO_FACE_LISTEN: 15.0,
    SocialInteraction.FACE_TO_FACE_SPEAK: 20.0,
}
VOICE_NEAR_WEIGHT = 0.5

# (critical penalty, weight above critical) per vital, scaled by the config impact factor
_EMOTION_WEIGHTS: dict[NeedType, tuple[float, float]] = {
    NeedType.HEALTH: (30.0, 20.0),
    NeedType.HUNGER: (20.0, 15.0),
    NeedType.THIRST: (25.0, 15.0),
}

_LABELS: dict[MoodDimension, tuple[str, str, str, str, str]] = {
    MoodDimension.EMOTION: ("very depressed", "depressed", "calm", "happy", "very happy"),
    MoodDimension.SOCIAL: ("very lonely", "lonely", "normal", "warm", "very warm"),
    MoodDimension.MENTALITY: ("very restless", "restless", "normal", "calm", "very calm"),
}


def clamp_mood(value: float) -> float:
    return max(MOOD_MIN, min(MOOD_MAX, value))


def _lerp(current: float, target: float, t: float) -> float:
    t = max(0.0, min(1.0, t))
    return current + (target - current) * t


class MoodModel:
    def __init__(self, config: "NeedsConfig") -> None:
        self.config = config
        self.emotion = MOOD_NEUTRAL
        self.social = MOOD_NEUTRAL
        self.mentality = MOOD_NEUTRAL
        self._elapsed = 0.0
        self._last_interaction = 0.0
        self._listeners: list[Callable[[MoodChange], None]] = []

    def on_mood_changed(self, callback: Callable[[MoodChange], None]) -> None:
        self._listeners.append(callback)

    @property
    def seconds_since_interaction(self) -> float:
        return self._elapsed - self._last_interaction

    def get(self, dimension: MoodDimension) -> float:
        if dimension == MoodDimension.EMOTION:
            return self.emotion
        if dimension == MoodDimension.SOCIAL:
            return self.social
        if dimension == MoodDimension.MENTALITY:
            return self.mentality
        return 0.0

    def values(self) -> dict[MoodDimension, float]:
        return {
            MoodDimension.EMOTION: self.emotion,
            MoodDimension.SOCIAL: self.social,
            MoodDimension.MENTALITY: self.mentality,
        }

    def overall_score(self) -> float:
        return (self.emotion + self.social + self.mentality) / 3.0

    def describe(self, dimension: MoodDimension) -> str:
        labels = _LABELS.get(dimension)
        if labels is None:
            return "unknown"
        value = self.get(dimension)
        if value < -50:
            return labels[0]
        if value < -20:
            return labels[1]
        if value < 20:
            return labels[2]
        if value < 50:
            return labels[3]
        return labels[4]

    def update(self, percentages: Mapping[NeedType, float], dt: float) -> None:
        if dt <= 0:
            return
        self._elapsed += dt
        self._update_emotion(percentages, dt)
        self._update_social(dt)
        self._update_mentality(percentages, dt)

    def emotion_target(self, percentages: Mapping[NeedType, float]) -> float:
        cfg = self.config
        target = MOOD_NEUTRAL
        for need, (penalty, weight) in _EMOTION_WEIGHTS.items():
            if need not in percentages:
                continue
            pct = percentages[need]
            impact = cfg.mood_impact.get(need, 0.0)
            if pct < cfg.critical_fraction(need):
                target -= penalty * impact
            else:
                target += (pct - 0.5) * weight * impact
        return clamp_mood(target)

    def mentality_target(self, percentages: Mapping[NeedType, float]) -> float:
        cfg = self.config
        target = MOOD_NEUTRAL
        critical_count = sum(
            1
            for need in _EMOTION_WEIGHTS
            if need in percentages and percentages[need] < cfg.critical_fraction(need)
        )
        stamina = percentages.get(NeedType.STAMINA)
        if stamina is not None and stamina < LOW_STAMINA_FRACTION:
            target -= 10.0 * cfg.mood_impact.get(NeedType.STAMINA, 0.0)
        if self.social < LONELY_THRESHOLD:
            target -= 20.0
        target -= critical_count * 20.0
        return clamp_mood(target)

    def _update_emotion(self, percentages: Mapping[NeedType, float], dt: float) -> None:
        old = self.emotion
        self.emotion = clamp_mood(_lerp(self.emotion, self.emotion_target(percentages), dt * EMOTION_RATE))
        self._notify(MoodDimension.EMOTION, old, self.emotion)

    def _update_social(self, dt: float) -> None:
        old = self.social
        if self.seconds_since_interaction > SOCIAL_IDLE_SEC:
            self.social -= self.config.social_decay_rate * dt * 60.0
        self.social = clamp_mood(self.social)
        self._notify(MoodDimension.SOCIAL, old, self.social)

    def _update_mentality(self, percentages: Mapping[NeedType, float], dt: float) -> None:
        old = self.mentality
        self.mentality = clamp_mood(_lerp(self.mentality, self.mentality_target(percentages), dt * MENTALITY_RATE))
        self._notify(MoodDimension.MENTALITY, old, self.mentality)

    def record_interaction(self, kind: SocialInteraction, weight: float = 1.0) -> float:
        base = INTERACTION_BOOSTS.get(kind)
        if base is None:
            return 0.0
        if kind == SocialInteraction.VOICE_TALK:
            if weight <= VOICE_NEAR_WEIGHT:
                return 0.0
            base *= weight

        old = self.social
        self.social = min(self.social + base, MOOD_MAX)
        self._last_interaction = self._elapsed
        self._notify(MoodDimension.SOCIAL, old, self.social)
        return self.social - old

    def adjust(self, dimension: MoodDimension, amount: float) -> None:
        old = self.get(dimension)
        new = clamp_mood(old + amount)
        if dimension == MoodDimension.EMOTION:
            self.emotion = new
        elif dimension == MoodDimension.SOCIAL:
            self.social = new
            if amount > 0:
                self._last_interaction = self._elapsed
        elif dimension == MoodDimension.MENTALITY:
            self.mentality = new
        else:
            return
        self._notify(dimension, old, new)

    def load(self, values: Mapping[MoodDimension, float]) -> None:
        self.emotion = clamp_mood(values.get(MoodDimension.EMOTION, self.emotion))
        self.social = clamp_mood(values.get(MoodDimension.SOCIAL, self.social))
        self.mentality = clamp_mood(values.get(MoodDimension.MENTALITY, self.mentality))

    def _notify(self, dimension: MoodDimension, old: float, new: float) -> None:
        if abs(new - old) <= MOOD_EPSILON:
            return
        change = MoodChange(dimension=dimension, old_value=old, new_value=new)
        for callback in list(self._listeners):
            try:
                callback(change)
            except Exception:
                LOGGER.exception("mood listener failed dimension=%s", dimension.value)
