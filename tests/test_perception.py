from __future__ import annotations

import math

import pytest

from roguemind.sim.movement import Vec2
from roguemind.sim.perception import PerceptionConfig, PerceptionSystem
from roguemind.sim.world import Entity, EntityKind, Room, RoomGrid, RoomType, WorldGeometry


@pytest.fixture
def geometry() -> WorldGeometry:
    grid = RoomGrid()
    grid.add(Room((0, 0), RoomType.SPAWN))
    grid.add(Room((1, 0), RoomType.MERCHANT))
    grid.add(Room((0, 1), RoomType.FOUNTAIN))
    grid.add(Room((-1, 0), RoomType.MONSTER))
    world = WorldGeometry(grid=grid)
    world.add_wall(Vec2(12.0, 0.0), Vec2(12.0, 16.0))

    world.add_entity(Entity("a1", EntityKind.TEAMMATE, Vec2(8.0, 8.0), tag="self"))
    world.add_entity(Entity("a2", EntityKind.TEAMMATE, Vec2(6.0, 8.0), tag="ally"))
    world.add_entity(Entity("slime-near", EntityKind.HOSTILE, Vec2(8.0, 11.0), tag="slime"))
    world.add_entity(Entity("slime-mid", EntityKind.HOSTILE, Vec2(8.0, 2.0), tag="slime"))
    world.add_entity(Entity("slime-far", EntityKind.HOSTILE, Vec2(-9.0, 8.0), tag="slime"))
    world.add_entity(Entity("npc-merchant", EntityKind.NPC, Vec2(14.0, 8.0), tag="merchant"))
    return world


@pytest.fixture
def position():
    box = {"pos": Vec2(8.0, 8.0)}
    return box


@pytest.fixture
def perception(geometry, position, clock) -> PerceptionSystem:
    return PerceptionSystem("a1", geometry, lambda: position["pos"], clock, PerceptionConfig())


def test_visible_entities_sorted_by_distance(perception):
    snapshot = perception.refresh()

    assert [seen.id for seen in snapshot.hostiles] == ["slime-near", "slime-mid"]
    assert snapshot.hostiles[0].distance == pytest.approx(3.0)
    assert [seen.id for seen in snapshot.teammates] == ["a2"]


def test_walls_block_sight(perception):
    snapshot = perception.refresh()

    assert snapshot.npcs == ()
    assert perception.can_see(Vec2(14.0, 8.0)) is False
    assert perception.can_see(Vec2(10.0, 8.0)) is True
    assert perception.can_reach(Vec2(14.0, 8.0)) is False


def test_wall_endpoint_counts_as_blocked(perception):
    assert perception.can_see(Vec2(16.0, -8.0)) is False


def test_current_room_and_discovery(perception, clock):
    found = []
    perception.on_room_discovered(found.append)

    snapshot = perception.refresh()
    assert snapshot.current_room.room_type == RoomType.SPAWN
    assert snapshot.discovered_new_room is True
    assert [room.coord for room in found] == [(0, 0)]

    clock.advance(0.5)
    snapshot = perception.refresh()
    assert snapshot.discovered_new_room is False
    assert len(found) == 1
    assert perception.discovered_rooms() == frozenset({(0, 0)})


def test_room_listener_failure_is_contained(perception):
    def boom(room):
        raise RuntimeError("listener exploded")

    perception.on_room_discovered(boom)
    snapshot = perception.refresh()

    assert snapshot.current_room is not None


def test_refresh_is_rate_limited(perception, geometry, clock):
    first = perception.refresh()
    geometry.add_entity(Entity("slime-new", EntityKind.HOSTILE, Vec2(9.0, 9.0), tag="slime"))

    assert perception.refresh() is first

    clock.advance(0.15)
    published = perception.refresh()
    assert published is not first
    assert len(published.hostiles) == 2

    clock.advance(0.15)
    assert [seen.id for seen in perception.refresh().hostiles][0] == "slime-new"


def test_forced_refresh_rescans(perception, geometry):
    perception.refresh()
    geometry.entities["slime-near"].active = False

    snapshot = perception.refresh(force=True)

    assert [seen.id for seen in snapshot.hostiles] == ["slime-mid"]


def test_enhanced_vision_doubles_range_and_expires(perception, clock):
    assert [seen.id for seen in perception.refresh().hostiles] == ["slime-near", "slime-mid"]

    perception.set_enhanced_vision(True, duration=5.0)
    snapshot = perception.refresh()
    assert snapshot.enhanced_vision is True
    assert "slime-far" in [seen.id for seen in snapshot.hostiles]
    assert {room.coord for room in snapshot.visible_rooms} == {(0, 0), (1, 0), (0, 1), (-1, 0)}

    clock.advance(5.0)
    snapshot = perception.refresh()
    assert snapshot.enhanced_vision is False
    assert "slime-far" not in [seen.id for seen in snapshot.hostiles]
    assert [room.coord for room in snapshot.visible_rooms] == [(0, 0)]


def test_teammate_engagement_window(perception, clock):
    perception.notify_damage_dealt("a2")
    assert perception.refresh().teammates[0].engaged is True

    clock.advance(4.0)
    assert perception.refresh().teammates[0].engaged is False


def test_non_finite_position_sees_nothing(perception, position):
    position["pos"] = Vec2(math.nan, 8.0)
    snapshot = perception.refresh()

    assert snapshot.current_room is None
    assert snapshot.hostiles == ()
    assert perception.can_see(Vec2(8.0, 8.0)) is False


def test_query_failure_returns_empty(perception, geometry, monkeypatch):
    def broken(kind):
        raise RuntimeError("entity table corrupted")

    monkeypatch.setattr(geometry, "entities_of", broken)
    snapshot = perception.refresh()

    assert snapshot.hostiles == ()
    assert snapshot.current_room is not None


def test_reset_clears_snapshot(perception):
    perception.refresh()
    perception.reset()

    assert perception.hostiles() == ()
    assert perception.current_room() is None
