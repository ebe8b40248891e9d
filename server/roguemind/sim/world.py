from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from roguemind.sim.movement import Vec2, cross


ROOM_SIZE = 16.0
CARDINAL_OFFSETS: tuple[tuple[int, int], ...] = ((0, 1), (0, -1), (-1, 0), (1, 0))


class RoomType(str, Enum):
    EMPTY = "empty"
    SPAWN = "spawn"
    MONSTER = "monster"
    TREASURE = "treasure"
    FOUNTAIN = "fountain"
    RESTAURANT = "restaurant"
    MERCHANT = "merchant"
    BLACKSMITH = "blacksmith"
    DOCTOR = "doctor"
    TAILOR = "tailor"
    PORTAL = "portal"


class EntityKind(str, Enum):
    HOSTILE = "hostile"
    NPC = "npc"
    ITEM = "item"
    PROJECTILE = "projectile"
    TEAMMATE = "teammate"


@dataclass(frozen=True)
class Room:
    coord: tuple[int, int]
    room_type: RoomType = RoomType.EMPTY
    explored: bool = False
    cleared: bool = False

    def center(self, room_size: float = ROOM_SIZE) -> Vec2:
        return Vec2((self.coord[0] + 0.5) * room_size, (self.coord[1] + 0.5) * room_size)

    def to_payload(self) -> dict[str, Any]:
        return {
            "coord": list(self.coord),
            "type": self.room_type.value,
            "explored": self.explored,
            "cleared": self.cleared,
        }


@dataclass
class RoomGrid:
    room_size: float = ROOM_SIZE
    rooms: dict[tuple[int, int], Room] = field(default_factory=dict)

    def add(self, room: Room) -> None:
        self.rooms[room.coord] = room

    def room_coordinate(self, position: Vec2) -> tuple[int, int] | None:
        if not position.is_finite() or self.room_size <= 0:
            return None
        return (math.floor(position.x / self.room_size), math.floor(position.y / self.room_size))

    def room_at(self, coord: tuple[int, int] | None) -> Room | None:
        if coord is None:
            return None
        return self.rooms.get(coord)

    def neighbors(self, coord: tuple[int, int]) -> list[Room]:
        found: list[Room] = []
        for dx, dy in CARDINAL_OFFSETS:
            room = self.rooms.get((coord[0] + dx, coord[1] + dy))
            if room is not None:
                found.append(room)
        return found

    def mark(self, coord: tuple[int, int], *, explored: bool | None = None, cleared: bool | None = None) -> None:
        room = self.rooms.get(coord)
        if room is None:
            return
        updates: dict[str, bool] = {}
        if explored is not None:
            updates["explored"] = explored
        if cleared is not None:
            updates["cleared"] = cleared
        self.rooms[coord] = replace(room, **updates)


@dataclass(frozen=True)
class Segment:
    a: Vec2
    b: Vec2


def segments_intersect(p1: Vec2, p2: Vec2, q1: Vec2, q2: Vec2) -> bool:
    r = p2 - p1
    s = q2 - q1
    denom = cross(r, s)
    qp = q1 - p1
    if abs(denom) < 1e-12:
        # parallel; collinear overlap counts as blocked
        if abs(cross(qp, r)) > 1e-12:
            return False
        rr = r.x * r.x + r.y * r.y
        if rr < 1e-12:
            return False
        t0 = (qp.x * r.x + qp.y * r.y) / rr
        t1 = t0 + (s.x * r.x + s.y * r.y) / rr
        return max(t0, t1) >= 0.0 and min(t0, t1) <= 1.0
    t = cross(qp, s) / denom
    u = cross(qp, r) / denom
    return 0.0 <= t <= 1.0 and 0.0 <= u <= 1.0


@dataclass
class Entity:
    id: str
    kind: EntityKind
    position: Vec2
    tag: str = ""
    active: bool = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "tag": self.tag,
            "position": self.position.to_dict(),
        }


@dataclass
class WorldGeometry:
    """Static walls, the room grid and the live entity table perception scans."""

    grid: RoomGrid = field(default_factory=RoomGrid)
    walls: list[Segment] = field(default_factory=list)
    entities: dict[str, Entity] = field(default_factory=dict)

    def add_wall(self, a: Vec2, b: Vec2) -> None:
        self.walls.append(Segment(a, b))

    def add_entity(self, entity: Entity) -> None:
        self.entities[entity.id] = entity

    def remove_entity(self, entity_id: str) -> Entity | None:
        return self.entities.pop(entity_id, None)

    def entities_of(self, kind: EntityKind) -> list[Entity]:
        return [entity for entity in self.entities.values() if entity.kind == kind and entity.active]

    def is_blocked(self, origin: Vec2, target: Vec2) -> bool:
        for wall in self.walls:
            if segments_intersect(origin, target, wall.a, wall.b):
                return True
        return False

    def to_payload(self) -> dict[str, Any]:
        return {
            "rooms": [room.to_payload() for room in self.grid.rooms.values()],
            "walls": [{"a": wall.a.to_dict(), "b": wall.b.to_dict()} for wall in self.walls],
            "entities": [entity.to_payload() for entity in self.entities.values() if entity.active],
        }
