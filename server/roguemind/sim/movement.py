from __future__ import annotations

import math
from dataclasses import dataclass


MAP_MIN = -48.0
MAP_MAX = 48.0


@dataclass(frozen=True)
class Vec2:
    x: float
    y: float = 0.0

    def __add__(self, other: "Vec2") -> "Vec2":
        return Vec2(self.x + other.x, self.y + other.y)

    def __sub__(self, other: "Vec2") -> "Vec2":
        return Vec2(self.x - other.x, self.y - other.y)

    def __mul__(self, factor: float) -> "Vec2":
        return Vec2(self.x * factor, self.y * factor)

    def __neg__(self) -> "Vec2":
        return Vec2(-self.x, -self.y)

    @property
    def length(self) -> float:
        return math.hypot(self.x, self.y)

    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y)

    def normalized(self) -> "Vec2":
        length = self.length
        if length < 1e-9 or not math.isfinite(length):
            return Vec2(0.0, 0.0)
        return Vec2(self.x / length, self.y / length)

    def to_dict(self) -> dict:
        return {"x": round(self.x, 2), "y": round(self.y, 2)}


ZERO = Vec2(0.0, 0.0)
SAFE_POINT = Vec2(8.0, 8.0)
UP = Vec2(0.0, 1.0)


def clamp_position(pos: Vec2) -> Vec2:
    return Vec2(
        x=max(MAP_MIN, min(MAP_MAX, pos.x)),
        y=max(MAP_MIN, min(MAP_MAX, pos.y)),
    )


def distance_2d(a: Vec2, b: Vec2) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


def dot(a: Vec2, b: Vec2) -> float:
    return a.x * b.x + a.y * b.y


def cross(a: Vec2, b: Vec2) -> float:
    return a.x * b.y - a.y * b.x


def angle_between(a: Vec2, b: Vec2) -> float:
    """Unsigned angle in degrees, 180 when either vector is degenerate."""
    la = a.length
    lb = b.length
    if la < 1e-9 or lb < 1e-9:
        return 180.0
    cosine = max(-1.0, min(1.0, dot(a, b) / (la * lb)))
    return math.degrees(math.acos(cosine))


def step_towards(current: Vec2, target: Vec2, max_step: float) -> Vec2:
    dx = target.x - current.x
    dy = target.y - current.y
    distance = math.hypot(dx, dy)
    if distance < 1e-6:
        return current

    ratio = min(1.0, max_step / distance)
    return clamp_position(Vec2(current.x + dx * ratio, current.y + dy * ratio))


def step_away_from(current: Vec2, threat: Vec2, max_step: float) -> Vec2:
    dx = current.x - threat.x
    dy = current.y - threat.y
    distance = math.hypot(dx, dy)
    if distance < 1e-6:
        dx, dy = 1.0, 0.0
        distance = 1.0

    ratio = min(1.0, max_step / distance)
    return clamp_position(Vec2(current.x + dx * ratio, current.y + dy * ratio))


def pick_wander_target(agent_id: str, tick: int) -> Vec2:
    seed = sum(ord(ch) for ch in agent_id) + tick * 17
    x = ((seed * 31) % 3200) / 3200.0 * 30.0 - 15.0
    y = ((seed * 53) % 3200) / 3200.0 * 30.0 - 15.0
    return clamp_position(Vec2(x, y))
