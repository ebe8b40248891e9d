from __future__ import annotations

import random

import pytest
from fastapi.testclient import TestClient

from roguemind import main
from roguemind.agents.stats import NeedType
from roguemind.sim.comms import MessageType
from roguemind.sim.engine import World


@pytest.fixture
def world(monkeypatch) -> World:
    fresh = World(rng=random.Random(5))
    monkeypatch.setattr(main, "world", fresh)
    return fresh


@pytest.fixture
def client(world) -> TestClient:
    # no context manager: the background tick loop stays off
    return TestClient(main.app)


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_state_payload(client):
    body = client.get("/api/state").json()

    assert body["tick"] == 0
    assert [agent["id"] for agent in body["agents"]] == ["a1", "a2", "a3", "a4"]
    assert body["oracle_stats"]["enabled"] is False
    assert {"rooms", "walls", "entities"} <= set(body["world"])
    assert set(body["runtime"]) == {"last_tick_ms", "avg_tick_ms"}


def test_agents_and_details(client):
    listed = client.get("/api/agents").json()
    assert listed[0]["name"] == "Mira"

    details = client.get("/api/agents/a1").json()
    assert details["economy"]["currency"] == 50
    assert details["needs"]["is_dead"] is False
    assert details["deaths"] == 0
    assert client.get("/api/agents/ghost").status_code == 404


def test_decision_preview(client, world):
    body = client.get("/api/agents/a1/decision").json()
    assert body["available"] is True
    assert body["decision"]["state"] == "exploring"
    assert body["decision"]["source"] == "rules"

    world.get_agent("a1").needs.kill()
    assert client.get("/api/agents/a1/decision").json() == {"available": False, "decision": None}
    assert client.get("/api/agents/ghost/decision").status_code == 404


def test_events_filtering(client, world):
    world.send_message("a2", MessageType.COME_HERE)

    assert len(client.get("/api/events").json()) == 2
    only_a2 = client.get("/api/events", params={"agent_id": "a2"}).json()
    assert [event["source_id"] for event in only_a2] == ["a2"]
    assert client.get("/api/events", params={"limit": 0}).status_code == 422


def test_send_message(client, world):
    response = client.post("/api/control/message", json={"agent_id": "a1", "type": "help", "pos_x": 4, "pos_y": 4})

    assert response.status_code == 200
    assert response.json()["accepted"] is True
    received = world.get_agent("a2").communicator.latest_message(MessageType.HELP)
    assert received.sender_id == "a1"


def test_send_message_errors(client, world):
    assert client.post("/api/control/message", json={"agent_id": "ghost", "type": "help"}).status_code == 404
    assert client.post("/api/control/message", json={"agent_id": "a1", "type": "dance"}).status_code == 422

    world.get_agent("a1").needs.kill()
    assert client.post("/api/control/message", json={"agent_id": "a1", "type": "help"}).status_code == 400

    world.bus.deregister("a2")
    assert client.post("/api/control/message", json={"agent_id": "a2", "type": "help"}).status_code == 503


def test_speed(client):
    assert client.post("/api/control/speed", json={"speed": 2.5}).json() == {"speed": 2.5}
    assert client.post("/api/control/speed", json={"speed": 50}).status_code == 422


def test_add_and_remove_agents(client):
    added = client.post("/api/control/agent/add", json={"name": "Wren", "currency": 10, "pos_x": 2, "pos_y": 2})
    assert added.status_code == 200
    assert added.json()["agent"]["id"] == "a5"

    duplicate = client.post("/api/control/agent/add", json={"id": "a1", "name": "Copy"})
    assert duplicate.status_code == 400

    assert client.post("/api/control/agent/remove", json={"agent_id": "a5"}).json() == {
        "accepted": True,
        "agent_id": "a5",
    }
    assert client.post("/api/control/agent/remove", json={"agent_id": "a5"}).status_code == 404


def test_last_agent_stays(client):
    for agent_id in ("a2", "a3", "a4"):
        assert client.post("/api/control/agent/remove", json={"agent_id": agent_id}).status_code == 200

    assert client.post("/api/control/agent/remove", json={"agent_id": "a1"}).status_code == 400


def test_vision(client):
    body = client.post("/api/control/vision", json={"agent_id": "a1", "enabled": True, "duration": 5}).json()

    assert body == {"agent_id": "a1", "enhanced_vision": True}
    assert client.post("/api/control/vision", json={"agent_id": "ghost"}).status_code == 404


def test_modifiers(client, world):
    response = client.post(
        "/api/control/modifier",
        json={"agent_id": "a1", "id": "weakened", "target": "health", "kind": "percentage", "magnitude": -50},
    )

    assert response.json()["modifier"]["remaining"] is None
    assert world.get_agent("a1").needs.get_stat(NeedType.HEALTH) == pytest.approx(50.0)

    removed = client.post("/api/control/modifier/remove", json={"agent_id": "a1", "id": "weakened"}).json()
    assert removed == {"removed": True}
    assert world.get_agent("a1").needs.get_stat(NeedType.HEALTH) == pytest.approx(100.0)


def test_stat_and_respawn(client, world):
    body = client.post("/api/control/stat", json={"agent_id": "a1", "need": "thirst", "amount": -25}).json()
    assert body == {"agent_id": "a1", "need": "thirst", "value": 75.0}

    assert client.post("/api/control/respawn", json={"agent_id": "a1"}).status_code == 400

    client.post("/api/control/stat", json={"agent_id": "a1", "need": "health", "amount": -500})
    assert world.get_agent("a1").is_dead
    assert client.post("/api/control/respawn", json={"agent_id": "a1"}).json()["accepted"] is True
    assert not world.get_agent("a1").is_dead


def test_dialogue_requires_the_oracle(client):
    assert client.post("/api/control/dialogue", json={"agent_id": "ghost"}).status_code == 404
    assert client.post("/api/control/dialogue", json={"agent_id": "a1", "situation": "x" * 300}).status_code == 422
    assert client.post("/api/control/dialogue", json={"agent_id": "a1"}).status_code == 503


def test_stream_sends_state_then_history(client):
    with client.websocket_connect("/ws/stream") as ws:
        first = ws.receive_json()
        second = ws.receive_json()

    assert first["type"] == "agents_state"
    assert len(first["payload"]) == 4
    assert second["type"] == "event"
    assert second["payload"]["text"] == "World loaded, agents online."
