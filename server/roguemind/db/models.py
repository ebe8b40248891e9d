from pydantic import BaseModel, Field

from roguemind.agents.stats import ModifierKind, NeedType
from roguemind.sim.comms import MessageType


class ControlMessageIn(BaseModel):
    agent_id: str = Field(min_length=1, max_length=32)
    type: MessageType
    pos_x: float | None = Field(default=None, ge=-48.0, le=48.0)
    pos_y: float | None = Field(default=None, ge=-48.0, le=48.0)


class ControlSpeedIn(BaseModel):
    speed: float = Field(ge=0.1, le=5.0)


class ControlAgentAddIn(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=64)
    avatar: str | None = Field(default=None, max_length=64)
    currency: int | None = Field(default=None, ge=0, le=100_000)
    pos_x: float | None = Field(default=None, ge=-48.0, le=48.0)
    pos_y: float | None = Field(default=None, ge=-48.0, le=48.0)


class ControlAgentRemoveIn(BaseModel):
    agent_id: str = Field(min_length=1, max_length=32)


class ControlVisionIn(BaseModel):
    agent_id: str = Field(min_length=1, max_length=32)
    enabled: bool = True
    duration: float = Field(default=10.0, ge=0.0, le=600.0)


class ControlModifierIn(BaseModel):
    agent_id: str = Field(min_length=1, max_length=32)
    id: str = Field(min_length=1, max_length=64)
    target: NeedType
    kind: ModifierKind = ModifierKind.FLAT
    magnitude: float = Field(ge=-1000.0, le=1000.0)
    duration: float = Field(default=-1.0, ge=-1.0, le=3600.0)


class ControlModifierRemoveIn(BaseModel):
    agent_id: str = Field(min_length=1, max_length=32)
    id: str = Field(min_length=1, max_length=64)


class ControlStatIn(BaseModel):
    agent_id: str = Field(min_length=1, max_length=32)
    need: NeedType
    amount: float = Field(ge=-1000.0, le=1000.0)


class ControlRespawnIn(BaseModel):
    agent_id: str = Field(min_length=1, max_length=32)


class ControlDialogueIn(BaseModel):
    agent_id: str = Field(min_length=1, max_length=32)
    situation: str | None = Field(default=None, max_length=280)
    previous: str | None = Field(default=None, max_length=280)
