from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from roguemind.agents.stats import PRIMARY_NEEDS, MoodDimension
from roguemind.envutil import env_float, env_int
from roguemind.errors import ConfigurationError, OracleError, RateLimitExceeded, ResponseParseError
from roguemind.llm.client import OracleClient
from roguemind.sim.decision import AgentMode, Decision, DecisionContext, DecisionSource, Priority, default_decision


LOGGER = logging.getLogger("roguemind.sim.oracle_decider")

SECONDS_PER_MINUTE = 60.0
SECONDS_PER_DAY = 86_400.0

_STATE_WORDS: dict[str, AgentMode] = {
    "空闲": AgentMode.IDLE,
    "探索": AgentMode.EXPLORING,
    "战斗": AgentMode.FIGHTING,
    "逃跑": AgentMode.FLEEING,
    "寻找": AgentMode.SEEKING,
    "交易": AgentMode.TRADING,
    "交互": AgentMode.INTERACTING,
    "交流": AgentMode.COMMUNICATING,
    "休息": AgentMode.RESTING,
    "危急": AgentMode.CRITICAL,
}

_PRIORITY_WORDS: dict[str, Priority] = {
    "普通": Priority.NORMAL,
    "生存": Priority.SURVIVAL,
    "战斗": Priority.COMBAT,
    "探索": Priority.EXPLORATION,
}

_BRACKETS = "[]【】()（）\"'`"


def _strip_brackets(value: str) -> str:
    return value.strip().strip(_BRACKETS).strip()


def parse_labeled_lines(text: str) -> dict[str, str]:
    """Collect ``Label: value`` lines; first occurrence of a label wins."""
    fields: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip().lstrip("-*#>• ").replace("**", "")
        if not line:
            continue
        colon = min((idx for idx in (line.find(":"), line.find("：")) if idx > 0), default=-1)
        if colon < 0:
            continue
        label = _strip_brackets(line[:colon]).lower()
        value = line[colon + 1 :].strip()
        if label and label not in fields:
            fields[label] = value
    return fields


def _lookup_enum(raw: str, enum_type: type, words: dict[str, Any]) -> Any:
    value = _strip_brackets(raw)
    if not value:
        return None
    lowered = value.lower()
    for member in enum_type:
        if lowered == member.value or lowered == member.name.lower():
            return member
    for word, member in words.items():
        if word in value:
            return member
    for member in enum_type:
        if member.value in lowered:
            return member
    return None


class OracleAnswer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    state: AgentMode = Field(default=AgentMode.EXPLORING, validation_alias=AliasChoices("state", "状态"))
    priority: Priority = Field(default=Priority.NORMAL, validation_alias=AliasChoices("priority", "优先级"))
    reasoning: str = Field(default="", validation_alias=AliasChoices("reasoning", "reason", "理由"))
    actions: list[str] = Field(default_factory=list, validation_alias=AliasChoices("actions", "行动"))

    @field_validator("state", mode="before")
    @classmethod
    def coerce_state(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _lookup_enum(value, AgentMode, _STATE_WORDS) or AgentMode.EXPLORING
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def coerce_priority(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _lookup_enum(value, Priority, _PRIORITY_WORDS) or Priority.NORMAL
        return value

    @field_validator("reasoning", mode="before")
    @classmethod
    def trim_reasoning(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _strip_brackets(value)[:280]
        return value

    @field_validator("actions", mode="before")
    @classmethod
    def split_actions(cls, value: Any) -> Any:
        if isinstance(value, str):
            cleaned = _strip_brackets(value)
            parts = cleaned.replace("，", ",").replace("、", ",").split(",")
            return [_strip_brackets(part) for part in parts if _strip_brackets(part)][:8]
        return value


_ANSWER_LABELS = {"state", "状态", "priority", "优先级", "reasoning", "reason", "理由", "actions", "行动"}


def parse_decision(text: str, source: DecisionSource = "oracle") -> Decision:
    fields = parse_labeled_lines(text)
    if not _ANSWER_LABELS.intersection(fields):
        raise ResponseParseError("no recognizable fields in oracle answer")

    try:
        answer = OracleAnswer.model_validate(fields)
    except ValidationError as exc:
        raise ResponseParseError(f"oracle answer failed validation: {exc.errors()}") from exc

    return Decision(
        state=answer.state,
        priority=answer.priority,
        rationale=answer.reasoning or "oracle advice",
        actions=answer.actions,
        source=source,
    )


class DialogueLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    dialogue: str = Field(default="...", validation_alias=AliasChoices("dialogue", "对话"))
    emotion: str = Field(default="neutral", validation_alias=AliasChoices("emotion", "情绪"))
    intent: str = Field(default="chat", validation_alias=AliasChoices("intent", "意图"))

    @field_validator("dialogue", "emotion", "intent", mode="before")
    @classmethod
    def strip_value(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _strip_brackets(value)[:280]
        return value


def parse_dialogue(text: str) -> DialogueLine:
    fields = {key: value for key, value in parse_labeled_lines(text).items() if _strip_brackets(value)}
    try:
        return DialogueLine.model_validate(fields)
    except ValidationError:
        return DialogueLine()


def render_prompt(ctx: DecisionContext) -> str:
    """Deterministic rendering; identical situations hash to the same cache key."""
    needs = ctx.needs
    lines = ["[Status]"]
    for need in PRIMARY_NEEDS:
        lines.append(f"- {need.value}: {needs.value(need):.0f}/{needs.maxima.get(need, 0.0):.0f}")
    lines.append("")
    lines.append("[Mood]")
    lines.append(f"- emotion: {needs.mood_value(MoodDimension.EMOTION):.0f} (depressed <-> happy)")
    lines.append(f"- social: {needs.mood_value(MoodDimension.SOCIAL):.0f} (lonely <-> warm)")
    lines.append(f"- mentality: {needs.mood_value(MoodDimension.MENTALITY):.0f} (restless <-> calm)")
    lines.append("")

    perception = ctx.perception
    lines.append("[Surroundings]")
    current = perception.current_room.room_type.value if perception.current_room else "unknown"
    lines.append(f"- current room: {current}")
    lines.append(f"- visible rooms: {len(perception.visible_rooms)}")
    lines.append(f"- nearby hostiles: {len(perception.hostiles)}")
    npc_tags = sorted({seen.tag or "npc" for seen in perception.npcs})
    lines.append(f"- nearby npcs: {', '.join(npc_tags) if npc_tags else 'none'}")
    lines.append(f"- nearby items: {len(perception.items)}")
    engaged = sum(1 for seen in perception.teammates if seen.engaged)
    lines.append(f"- teammates in sight: {len(perception.teammates)} ({engaged} fighting)")
    lines.append("")

    lines.append("[Economy]")
    lines.append(f"- currency: {ctx.economy.currency}")
    lines.append(f"- inventory: {ctx.economy.used_slots}/{ctx.economy.capacity}")
    lines.append("")

    if ctx.messages:
        lines.append("[Team messages]")
        for message in sorted({message.type.value for message in ctx.messages}):
            lines.append(f"- {message}")
        lines.append("")

    lines.append("Advise the next action. Survival first, then exploration and growth.")
    lines.append("Answer format:")
    lines.append("State: [Exploring/Fighting/Fleeing/Seeking/Interacting/Communicating/Resting/Critical]")
    lines.append("Priority: [Survival/Combat/Exploration/Normal]")
    lines.append("Reasoning: [one short sentence]")
    lines.append("Actions: [comma separated list]")
    return "\n".join(lines)


def cache_key(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()


@dataclass
class ResponseCache:
    ttl_sec: float
    clock: Callable[[], float]
    _entries: dict[str, tuple[float, str]] = field(default_factory=dict)

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, text = entry
        if self.clock() - stored_at >= self.ttl_sec:
            self._entries.pop(key, None)
            return None
        return text

    def put(self, key: str, text: str) -> None:
        self.purge()
        self._entries[key] = (self.clock(), text)

    def purge(self) -> int:
        now = self.clock()
        stale = [key for key, (stored_at, _text) in self._entries.items() if now - stored_at >= self.ttl_sec]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class RequestBudget:
    per_minute: int
    per_day: int
    clock: Callable[[], float]
    _minute: deque[float] = field(default_factory=deque)
    _day_started: float | None = None
    _day_count: int = 0

    def _roll(self, now: float) -> None:
        while self._minute and now - self._minute[0] >= SECONDS_PER_MINUTE:
            self._minute.popleft()
        if self._day_started is None or now - self._day_started >= SECONDS_PER_DAY:
            self._day_started = now
            self._day_count = 0

    def acquire(self) -> None:
        now = self.clock()
        self._roll(now)
        if len(self._minute) >= self.per_minute:
            raise RateLimitExceeded(f"per-minute ceiling {self.per_minute} reached")
        if self._day_count >= self.per_day:
            raise RateLimitExceeded(f"per-day ceiling {self.per_day} reached")
        self._minute.append(now)
        self._day_count += 1

    def remaining(self) -> dict[str, int]:
        self._roll(self.clock())
        return {
            "minute": max(0, self.per_minute - len(self._minute)),
            "day": max(0, self.per_day - self._day_count),
        }


@dataclass
class OracleDecider:
    client: OracleClient
    cache_ttl_sec: float = 300.0
    max_requests_per_minute: int = 10
    max_requests_per_day: int = 1000
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self) -> None:
        self.cache = ResponseCache(self.cache_ttl_sec, self.clock)
        self.budget = RequestBudget(self.max_requests_per_minute, self.max_requests_per_day, self.clock)
        self.network_calls = 0
        self.fallbacks = 0

    @classmethod
    def from_env(cls) -> "OracleDecider":
        return cls(
            client=OracleClient.from_env(),
            cache_ttl_sec=env_float("ORACLE_CACHE_TTL_SEC", 300.0, 0.0, 86_400.0),
            max_requests_per_minute=env_int("ORACLE_MAX_REQUESTS_PER_MINUTE", 10, 1, 600),
            max_requests_per_day=env_int("ORACLE_MAX_REQUESTS_PER_DAY", 1000, 1, 100_000),
        )

    @property
    def enabled(self) -> bool:
        return self.client.configured

    def _debug(self, message: str) -> None:
        if self.client.debug:
            LOGGER.warning(message)

    def _fallback(self, ctx: DecisionContext, reason: str) -> Decision:
        self.fallbacks += 1
        LOGGER.info("oracle fallback agent=%s reason=%s", ctx.agent_id, reason)
        return default_decision()

    async def _ask(self, key: str, prompt: str, system_prompt: str | None = None) -> str:
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        if not self.client.configured:
            raise ConfigurationError("oracle not configured")
        self.budget.acquire()
        self.network_calls += 1
        return await self.client.complete(prompt, system_prompt)

    async def decide(self, ctx: DecisionContext) -> Decision:
        prompt = render_prompt(ctx)
        key = cache_key(prompt)

        # only answers that parsed are ever stored
        cached = self.cache.get(key)
        if cached is not None:
            return parse_decision(cached, source="cache")

        try:
            text = await self._ask(key, prompt)
        except ConfigurationError as exc:
            self._debug(f"oracle skipped: {exc}")
            return self._fallback(ctx, "not configured")
        except RateLimitExceeded as exc:
            return self._fallback(ctx, str(exc))
        except OracleError as exc:
            LOGGER.warning("oracle request failed agent=%s error=%s", ctx.agent_id, exc)
            return self._fallback(ctx, type(exc).__name__)

        try:
            decision = parse_decision(text, source="oracle")
        except ResponseParseError as exc:
            self._debug(f"oracle answer unusable: {exc} text={text[:200]!r}")
            return self._fallback(ctx, "unparsable answer")

        self.cache.put(key, text)
        return decision

    def submit(self, ctx: DecisionContext) -> "asyncio.Task[Decision]":
        """Schedule ``decide`` on the running loop; cancel the task to abandon it."""
        return asyncio.get_running_loop().create_task(self.decide(ctx), name=f"oracle-{ctx.agent_id}")

    async def request_dialogue(self, speaker: str, situation: str, previous: str | None = None) -> DialogueLine:
        lines = [f"You are {speaker}, an adventurer in a cooperative survival roguelike.", f"Situation: {situation}"]
        if previous:
            lines.append(f"Your teammate just said: {previous}")
        lines.append("Reply with one short in-character line.")
        lines.append("Answer format:")
        lines.append("Dialogue: [what you say]")
        lines.append("Emotion: [one word]")
        lines.append("Intent: [one word]")
        prompt = "\n".join(lines)
        key = "dialogue:" + cache_key(prompt)

        try:
            text = await self._ask(key, prompt)
        except OracleError as exc:
            self._debug(f"dialogue fallback speaker={speaker} error={exc}")
            return DialogueLine()

        line = parse_dialogue(text)
        if line.dialogue != "...":
            self.cache.put(key, text)
        return line

    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "network_calls": self.network_calls,
            "fallbacks": self.fallbacks,
            "cached": len(self.cache),
            "remaining": self.budget.remaining(),
        }
