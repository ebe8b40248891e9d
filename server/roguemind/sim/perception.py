from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from roguemind.envutil import env_float
from roguemind.sim.movement import Vec2, distance_2d
from roguemind.sim.world import Entity, EntityKind, Room, WorldGeometry


LOGGER = logging.getLogger("roguemind.sim.perception")

NEVER = -math.inf


@dataclass
class PerceptionConfig:
    update_interval: float = 0.2
    cache_interval: float = 0.1
    hostile_range: float = 10.0
    npc_range: float = 8.0
    item_range: float = 5.0
    projectile_range: float = 12.0
    teammate_range: float = 16.0
    enhanced_range_multiplier: float = 2.0
    engaged_window: float = 3.0

    @classmethod
    def from_env(cls) -> "PerceptionConfig":
        return cls(
            update_interval=env_float("PERCEPTION_UPDATE_INTERVAL_SEC", 0.2, 0.02, 5.0),
            cache_interval=env_float("PERCEPTION_CACHE_INTERVAL_SEC", 0.1, 0.01, 5.0),
            hostile_range=env_float("PERCEPTION_HOSTILE_RANGE", 10.0, 1.0, 100.0),
            npc_range=env_float("PERCEPTION_NPC_RANGE", 8.0, 1.0, 100.0),
            item_range=env_float("PERCEPTION_ITEM_RANGE", 5.0, 1.0, 100.0),
            projectile_range=env_float("PERCEPTION_PROJECTILE_RANGE", 12.0, 1.0, 100.0),
            teammate_range=env_float("PERCEPTION_TEAMMATE_RANGE", 16.0, 1.0, 100.0),
            engaged_window=env_float("PERCEPTION_ENGAGED_WINDOW_SEC", 3.0, 0.1, 60.0),
        )

    def range_for(self, kind: EntityKind) -> float:
        return {
            EntityKind.HOSTILE: self.hostile_range,
            EntityKind.NPC: self.npc_range,
            EntityKind.ITEM: self.item_range,
            EntityKind.PROJECTILE: self.projectile_range,
            EntityKind.TEAMMATE: self.teammate_range,
        }[kind]


@dataclass(frozen=True)
class SeenEntity:
    id: str
    kind: EntityKind
    tag: str
    position: Vec2
    distance: float
    engaged: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "tag": self.tag,
            "position": self.position.to_dict(),
            "distance": round(self.distance, 2),
        }
        if self.kind == EntityKind.TEAMMATE:
            payload["engaged"] = self.engaged
        return payload


@dataclass(frozen=True)
class PerceptionSnapshot:
    current_room: Room | None = None
    visible_rooms: tuple[Room, ...] = ()
    hostiles: tuple[SeenEntity, ...] = ()
    npcs: tuple[SeenEntity, ...] = ()
    items: tuple[SeenEntity, ...] = ()
    projectiles: tuple[SeenEntity, ...] = ()
    teammates: tuple[SeenEntity, ...] = ()
    refreshed_at: float = NEVER
    discovered_new_room: bool = False
    enhanced_vision: bool = False

    def of_kind(self, kind: EntityKind) -> tuple[SeenEntity, ...]:
        return {
            EntityKind.HOSTILE: self.hostiles,
            EntityKind.NPC: self.npcs,
            EntityKind.ITEM: self.items,
            EntityKind.PROJECTILE: self.projectiles,
            EntityKind.TEAMMATE: self.teammates,
        }[kind]

    def nearest(self, kind: EntityKind, tag: str | None = None) -> SeenEntity | None:
        for seen in self.of_kind(kind):
            if tag is None or seen.tag == tag:
                return seen
        return None

    def visible_room_of_type(self, room_type: str) -> Room | None:
        for room in self.visible_rooms:
            if room.room_type.value == room_type:
                return room
        return None

    def to_payload(self) -> dict[str, Any]:
        return {
            "current_room": self.current_room.to_payload() if self.current_room else None,
            "visible_rooms": [room.to_payload() for room in self.visible_rooms],
            "hostiles": [seen.to_payload() for seen in self.hostiles],
            "npcs": [seen.to_payload() for seen in self.npcs],
            "items": [seen.to_payload() for seen in self.items],
            "projectiles": [seen.to_payload() for seen in self.projectiles],
            "teammates": [seen.to_payload() for seen in self.teammates],
            "enhanced_vision": self.enhanced_vision,
        }


EMPTY_SNAPSHOT = PerceptionSnapshot()


class PerceptionSystem:
    def __init__(
        self,
        owner_id: str,
        geometry: WorldGeometry,
        position: Callable[[], Vec2],
        clock: Callable[[], float],
        config: PerceptionConfig | None = None,
    ) -> None:
        self.owner_id = owner_id
        self.geometry = geometry
        self.config = config or PerceptionConfig()
        self._position = position
        self._clock = clock

        self._last_scan = NEVER
        self._last_publish = NEVER
        self._enhanced = False
        self._enhanced_until: float | None = None

        self._current_room: Room | None = None
        self._visible_rooms: list[Room] = []
        self._found: dict[EntityKind, list[SeenEntity]] = {kind: [] for kind in EntityKind}
        self._discovered: set[tuple[int, int]] = set()
        self._discovered_this_scan = False
        self._damage_dealt_at: dict[str, float] = {}
        self._room_listeners: list[Callable[[Room], None]] = []

        self._snapshot = EMPTY_SNAPSHOT

    def on_room_discovered(self, callback: Callable[[Room], None]) -> None:
        self._room_listeners.append(callback)

    # -- refresh ---------------------------------------------------------

    def refresh(self, force: bool = False) -> PerceptionSnapshot:
        now = self._clock()
        self._expire_vision(now)

        if force or now - self._last_scan >= self.config.update_interval:
            self._scan()
            self._last_scan = now
        if force or now - self._last_publish >= self.config.cache_interval:
            self._publish(now)
            self._last_publish = now
        return self._snapshot

    def _scan(self) -> None:
        self._discovered_this_scan = False
        self._update_rooms()
        for kind in EntityKind:
            self._found[kind] = self._query(kind)

    def _publish(self, now: float) -> None:
        self._snapshot = PerceptionSnapshot(
            current_room=self._current_room,
            visible_rooms=tuple(self._visible_rooms),
            hostiles=tuple(self._found[EntityKind.HOSTILE]),
            npcs=tuple(self._found[EntityKind.NPC]),
            items=tuple(self._found[EntityKind.ITEM]),
            projectiles=tuple(self._found[EntityKind.PROJECTILE]),
            teammates=tuple(self._found[EntityKind.TEAMMATE]),
            refreshed_at=now,
            discovered_new_room=self._discovered_this_scan,
            enhanced_vision=self.enhanced_vision,
        )

    def _update_rooms(self) -> None:
        try:
            grid = self.geometry.grid
            coord = grid.room_coordinate(self._position())
            room = grid.room_at(coord)
        except Exception:
            LOGGER.exception("room lookup failed owner=%s", self.owner_id)
            room = None

        self._current_room = room
        self._visible_rooms = []
        if room is None:
            return

        if room.coord not in self._discovered:
            self._discovered.add(room.coord)
            self._discovered_this_scan = True
            LOGGER.info("room discovered owner=%s coord=%s type=%s", self.owner_id, room.coord, room.room_type.value)
            for callback in list(self._room_listeners):
                try:
                    callback(room)
                except Exception:
                    LOGGER.exception("room listener failed owner=%s", self.owner_id)

        self._visible_rooms.append(room)
        if self.enhanced_vision:
            self._visible_rooms.extend(self.geometry.grid.neighbors(room.coord))

    def _query(self, kind: EntityKind) -> list[SeenEntity]:
        try:
            origin = self._position()
            limit = self.config.range_for(kind)
            now = self._clock()
            found: list[SeenEntity] = []
            for entity in self.geometry.entities_of(kind):
                if entity.id == self.owner_id:
                    continue
                if not self._can_see(origin, entity.position, limit):
                    continue
                found.append(self._seen(entity, origin, now))
            found.sort(key=lambda seen: seen.distance)
            return found
        except Exception:
            LOGGER.exception("perception query failed owner=%s kind=%s", self.owner_id, kind.value)
            return []

    def _seen(self, entity: Entity, origin: Vec2, now: float) -> SeenEntity:
        engaged = False
        if entity.kind == EntityKind.TEAMMATE:
            dealt_at = self._damage_dealt_at.get(entity.id)
            engaged = dealt_at is not None and now - dealt_at <= self.config.engaged_window
        return SeenEntity(
            id=entity.id,
            kind=entity.kind,
            tag=entity.tag,
            position=entity.position,
            distance=distance_2d(origin, entity.position),
            engaged=engaged,
        )

    # -- visibility ------------------------------------------------------

    def _can_see(self, origin: Vec2, target: Vec2, limit: float) -> bool:
        try:
            if not origin.is_finite() or not target.is_finite():
                return False
            distance = (target - origin).length
            if not math.isfinite(distance):
                return False
            if self.enhanced_vision:
                limit *= self.config.enhanced_range_multiplier
            if distance > limit:
                return False
            if distance < 1e-6:
                return True
            return not self.geometry.is_blocked(origin, target)
        except Exception:
            LOGGER.exception("line of sight check failed owner=%s", self.owner_id)
            return False

    def can_see(self, target: Vec2, limit: float | None = None) -> bool:
        try:
            origin = self._position()
        except Exception:
            LOGGER.exception("position lookup failed owner=%s", self.owner_id)
            return False
        return self._can_see(origin, target, math.inf if limit is None else limit)

    def can_reach(self, target: Vec2) -> bool:
        """Straight-line reachability; no pathfinding."""
        try:
            origin = self._position()
            if not origin.is_finite() or not target.is_finite():
                return False
            return not self.geometry.is_blocked(origin, target)
        except Exception:
            LOGGER.exception("reachability check failed owner=%s", self.owner_id)
            return False

    # -- enhanced vision -------------------------------------------------

    @property
    def enhanced_vision(self) -> bool:
        return self._enhanced

    def set_enhanced_vision(self, enabled: bool, duration: float = 0.0) -> None:
        self._enhanced = enabled
        if enabled and duration > 0:
            self._enhanced_until = self._clock() + duration
        else:
            self._enhanced_until = None
        # rescan on the next refresh so rooms and ranges match the new vision
        self._last_scan = NEVER
        self._last_publish = NEVER
        LOGGER.info("enhanced vision owner=%s enabled=%s duration=%.1f", self.owner_id, enabled, duration)

    def _expire_vision(self, now: float) -> None:
        if self._enhanced and self._enhanced_until is not None and now >= self._enhanced_until:
            self._enhanced = False
            self._enhanced_until = None
            self._last_scan = NEVER
            self._last_publish = NEVER

    # -- combat collaborator ---------------------------------------------

    def notify_damage_dealt(self, attacker_id: str) -> None:
        self._damage_dealt_at[attacker_id] = self._clock()

    # -- cached accessors ------------------------------------------------

    def snapshot(self) -> PerceptionSnapshot:
        return self._snapshot

    def hostiles(self) -> tuple[SeenEntity, ...]:
        return self._snapshot.hostiles

    def npcs(self) -> tuple[SeenEntity, ...]:
        return self._snapshot.npcs

    def items(self) -> tuple[SeenEntity, ...]:
        return self._snapshot.items

    def projectiles(self) -> tuple[SeenEntity, ...]:
        return self._snapshot.projectiles

    def teammates(self) -> tuple[SeenEntity, ...]:
        return self._snapshot.teammates

    def visible_rooms(self) -> tuple[Room, ...]:
        return self._snapshot.visible_rooms

    def current_room(self) -> Room | None:
        return self._snapshot.current_room

    def discovered_rooms(self) -> frozenset[tuple[int, int]]:
        return frozenset(self._discovered)

    def reset(self) -> None:
        self._last_scan = NEVER
        self._last_publish = NEVER
        self._found = {kind: [] for kind in EntityKind}
        self._snapshot = EMPTY_SNAPSHOT
