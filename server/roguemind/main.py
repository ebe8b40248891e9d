from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from roguemind.db.models import (
    ControlAgentAddIn,
    ControlAgentRemoveIn,
    ControlDialogueIn,
    ControlMessageIn,
    ControlModifierIn,
    ControlModifierRemoveIn,
    ControlRespawnIn,
    ControlSpeedIn,
    ControlStatIn,
    ControlVisionIn,
)
from roguemind.envutil import env_float, load_env_file
from roguemind.sim.engine import World
from roguemind.sim.movement import Vec2


LOGGER = logging.getLogger("roguemind.main")

# server/roguemind/main.py -> .env sits next to the "server" directory
load_env_file(Path(__file__).resolve().parents[2] / ".env")


class StreamHub:
    """Fan-out of ``{"type", "payload"}`` frames to every connected socket."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._clients)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.add(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)

    @staticmethod
    def frame(kind: str, payload: Any) -> str:
        return json.dumps({"type": kind, "payload": payload}, ensure_ascii=False)

    async def send(self, ws: WebSocket, kind: str, payload: Any) -> None:
        await ws.send_text(self.frame(kind, payload))

    async def publish(self, kind: str, payload: Any) -> None:
        async with self._lock:
            targets = tuple(self._clients)
        if not targets:
            return

        text = self.frame(kind, payload)
        dropped = []
        for ws in targets:
            try:
                await ws.send_text(text)
            except Exception as exc:
                LOGGER.info("dropping stream client error=%r", exc)
                dropped.append(ws)
        if dropped:
            async with self._lock:
                self._clients.difference_update(dropped)


@dataclass
class TickTimer:
    last_ms: float = 0.0
    avg_ms: float = 0.0
    smoothing: float = 0.12

    def record(self, elapsed_ms: float) -> None:
        self.last_ms = elapsed_ms
        if self.avg_ms <= 0.0:
            self.avg_ms = elapsed_ms
        else:
            self.avg_ms += (elapsed_ms - self.avg_ms) * self.smoothing

    def to_payload(self) -> dict[str, float]:
        return {"last_tick_ms": round(self.last_ms, 3), "avg_tick_ms": round(self.avg_ms, 3)}


TICK_INTERVAL_SEC = env_float("TICK_INTERVAL_SEC", 0.5, 0.05, 10.0)

app = FastAPI(title="Roguemind Agent Server", version="0.1.0")
world = World.from_env()
hub = StreamHub()
timer = TickTimer()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def _publish_since(before_event_id: int) -> None:
    for event in world.events_since(before_event_id):
        await hub.publish("event", event)
    await hub.publish("agents_state", world.agents_state_payload())


async def tick_loop() -> None:
    while True:
        await asyncio.sleep(TICK_INTERVAL_SEC)

        started_at = time.perf_counter()
        try:
            result = world.step(TICK_INTERVAL_SEC)
        except Exception:
            # one bad tick must not stop the simulation
            LOGGER.exception("world step failed tick=%d", world.state.tick)
            continue

        await hub.publish("agents_state", world.agents_state_payload())
        for event in result.events:
            await hub.publish("event", event)
        timer.record((time.perf_counter() - started_at) * 1000.0)


@app.on_event("startup")
async def startup() -> None:
    app.state.tick_task = asyncio.create_task(tick_loop())
    LOGGER.info("tick loop started interval=%.2fs oracle=%s", TICK_INTERVAL_SEC, world.oracle is not None)


@app.on_event("shutdown")
async def shutdown() -> None:
    world.cancel_all_oracle_tasks()
    task = getattr(app.state, "tick_task", None)
    if task:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/api/state")
async def state() -> dict:
    payload = world.state_payload()
    payload["runtime"] = timer.to_payload()
    return payload


@app.get("/api/agents")
async def agents() -> list[dict]:
    return world.agents_list_payload()


@app.get("/api/agents/{agent_id}")
async def agent(agent_id: str) -> dict:
    details = world.agent_details(agent_id)
    if not details:
        raise HTTPException(status_code=404, detail="agent not found")
    return details


@app.get("/api/agents/{agent_id}/decision")
async def agent_decision(agent_id: str) -> dict:
    try:
        decision = world.agent_decision(agent_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="agent not found") from None
    if decision is None:
        return {"available": False, "decision": None}
    return {"available": True, "decision": decision.model_dump(mode="json")}


@app.get("/api/events")
async def events(
    limit: int = Query(default=200, ge=1, le=500),
    agent_id: str | None = Query(default=None),
) -> list[dict]:
    return world.events_payload(limit=limit, agent_id=agent_id)


@contextlib.asynccontextmanager
async def _publishing() -> AsyncIterator[None]:
    """Push events produced inside the block, unless the block raised."""
    before_event_id = world.last_event_id
    yield
    await _publish_since(before_event_id)


def _position(x: float | None, y: float | None) -> Vec2 | None:
    if x is None or y is None:
        return None
    return Vec2(x, y)


@app.post("/api/control/message")
async def control_message(payload: ControlMessageIn) -> dict:
    async with _publishing():
        try:
            event = world.send_message(payload.agent_id, payload.type, _position(payload.pos_x, payload.pos_y))
        except KeyError:
            raise HTTPException(status_code=404, detail="agent not found") from None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        except RuntimeError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from None
    return {"accepted": True, "event_id": event["id"]}


@app.post("/api/control/speed")
async def control_speed(payload: ControlSpeedIn) -> dict:
    return {"speed": world.update_speed(payload.speed)}


@app.post("/api/control/agent/add")
async def control_agent_add(payload: ControlAgentAddIn) -> dict:
    async with _publishing():
        try:
            added = world.add_agent(
                agent_id=payload.id,
                name=payload.name,
                position=_position(payload.pos_x, payload.pos_y),
                avatar=payload.avatar,
                currency=payload.currency,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
    return {"accepted": True, "agent": added.to_agent_summary()}


@app.post("/api/control/agent/remove")
async def control_agent_remove(payload: ControlAgentRemoveIn) -> dict:
    async with _publishing():
        try:
            removed = world.remove_agent(payload.agent_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="agent not found") from None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
    return {"accepted": True, "agent_id": removed.id}


@app.post("/api/control/vision")
async def control_vision(payload: ControlVisionIn) -> dict:
    try:
        enabled = world.set_vision(payload.agent_id, payload.enabled, payload.duration)
    except KeyError:
        raise HTTPException(status_code=404, detail="agent not found") from None
    return {"agent_id": payload.agent_id, "enhanced_vision": enabled}


@app.post("/api/control/modifier")
async def control_modifier(payload: ControlModifierIn) -> dict:
    async with _publishing():
        try:
            modifier = world.apply_modifier(
                payload.agent_id,
                modifier_id=payload.id,
                target=payload.target,
                kind=payload.kind,
                magnitude=payload.magnitude,
                duration=payload.duration,
            )
        except KeyError:
            raise HTTPException(status_code=404, detail="agent not found") from None
    return {"accepted": True, "modifier": modifier.to_payload()}


@app.post("/api/control/modifier/remove")
async def control_modifier_remove(payload: ControlModifierRemoveIn) -> dict:
    try:
        removed = world.remove_modifier(payload.agent_id, payload.id)
    except KeyError:
        raise HTTPException(status_code=404, detail="agent not found") from None
    return {"removed": removed}


@app.post("/api/control/stat")
async def control_stat(payload: ControlStatIn) -> dict:
    async with _publishing():
        try:
            value = world.modify_stat(payload.agent_id, payload.need, payload.amount)
        except KeyError:
            raise HTTPException(status_code=404, detail="agent not found") from None
    return {"agent_id": payload.agent_id, "need": payload.need.value, "value": round(value, 2)}


@app.post("/api/control/respawn")
async def control_respawn(payload: ControlRespawnIn) -> dict:
    async with _publishing():
        try:
            respawned = world.respawn_agent(payload.agent_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="agent not found") from None
        if not respawned:
            raise HTTPException(status_code=400, detail="agent is alive")
    return {"accepted": True, "agent_id": payload.agent_id}


@app.post("/api/control/dialogue")
async def control_dialogue(payload: ControlDialogueIn) -> dict:
    async with _publishing():
        try:
            line = await world.agent_dialogue(payload.agent_id, payload.situation, payload.previous)
        except KeyError:
            raise HTTPException(status_code=404, detail="agent not found") from None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        except RuntimeError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from None
    return {"agent_id": payload.agent_id, "line": line.model_dump()}


@app.websocket("/ws/stream")
async def ws_stream(ws: WebSocket) -> None:
    await hub.connect(ws)
    try:
        await hub.send(ws, "agents_state", world.agents_state_payload())
        for event in world.events_payload(limit=10):
            await hub.send(ws, "event", event)
        # the client never sends anything meaningful; reading detects disconnects
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        LOGGER.debug("stream client left clients=%d", len(hub) - 1)
    finally:
        await hub.disconnect(ws)
