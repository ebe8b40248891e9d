from __future__ import annotations

from collections.abc import Callable

import pytest

from roguemind.agents.economy import EconomySnapshot, InventoryItem, ItemType
from roguemind.agents.needs import NeedsConfig, NeedsModel
from roguemind.agents.stats import MoodDimension, NeedType
from roguemind.sim.comms import Channel, Message, MessageType
from roguemind.sim.decision import DecisionContext
from roguemind.sim.movement import Vec2
from roguemind.sim.perception import EMPTY_SNAPSHOT, PerceptionSnapshot


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1000.0)


@pytest.fixture
def make_needs() -> Callable[..., NeedsModel]:
    def _make(
        values: dict[NeedType, float] | None = None,
        mood: dict[MoodDimension, float] | None = None,
        config: NeedsConfig | None = None,
    ) -> NeedsModel:
        needs = NeedsModel(config)
        for need, value in (values or {}).items():
            needs.set_stat(need, value)
        if mood:
            needs.mood.load(mood)
        return needs

    return _make


@pytest.fixture
def make_ctx(make_needs) -> Callable[..., DecisionContext]:
    def _make(
        values: dict[NeedType, float] | None = None,
        mood: dict[MoodDimension, float] | None = None,
        perception: PerceptionSnapshot = EMPTY_SNAPSHOT,
        messages: tuple[Message, ...] = (),
        currency: int = 50,
        items: tuple[InventoryItem, ...] = (),
        capacity: int = 12,
        recently_sent: frozenset[MessageType] = frozenset(),
        dead: bool = False,
        agent_id: str = "a1",
    ) -> DecisionContext:
        needs = make_needs(values, mood)
        if dead:
            needs.kill()
        return DecisionContext(
            agent_id=agent_id,
            needs=needs.snapshot(),
            perception=perception,
            messages=messages,
            economy=EconomySnapshot(currency=currency, capacity=capacity, items=items),
            position=Vec2(8.0, 8.0),
            now=100.0,
            recently_sent=recently_sent,
        )

    return _make


def radio(message_id: int, sender: str, message_type: MessageType, x: float = 20.0, y: float = 20.0) -> Message:
    return Message(
        id=message_id,
        sender_id=sender,
        type=message_type,
        position=Vec2(x, y),
        timestamp=95.0,
        channel=Channel.RADIO,
    )


def potion() -> InventoryItem:
    return InventoryItem("red potion", 1, 25, ItemType.POTION)


def food() -> InventoryItem:
    return InventoryItem("bread", 1, 10, ItemType.FOOD)


def drink() -> InventoryItem:
    return InventoryItem("water flask", 1, 8, ItemType.DRINK)


class ScriptedClient:
    """Stands in for ``OracleClient``; replays answers, the last one repeats."""

    debug = False

    def __init__(self, *answers, configured: bool = True) -> None:
        self.answers = list(answers)
        self.configured = configured
        self.prompts: list[str] = []

    async def complete(self, user_prompt: str, system_prompt: str | None = None) -> str:
        self.prompts.append(user_prompt)
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, BaseException):
            raise answer
        return answer
