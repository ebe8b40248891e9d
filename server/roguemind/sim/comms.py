from __future__ import annotations

import itertools
import logging
from collections import deque
from collections.abc import Callable, Collection
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from roguemind.agents.stats import SocialInteraction
from roguemind.envutil import env_float
from roguemind.sim.movement import Vec2, angle_between, distance_2d

if TYPE_CHECKING:
    from roguemind.agents.needs import NeedsModel


LOGGER = logging.getLogger("roguemind.sim.comms")

HISTORY_LIMIT = 20
DEFAULT_VALIDITY_SEC = 60.0
HELP_VALIDITY_SEC = 30.0
RECENT_WINDOW_SEC = 30.0
NEAR_TALK_WEIGHT = 0.5


class MessageType(str, Enum):
    HELP = "help"
    COME_HERE = "come_here"
    GOING_TO = "going_to"
    FOUND_WATER = "found_water"
    FOUND_PORTAL = "found_portal"
    FOUND_NPC = "found_npc"
    CHAT = "chat"


class Channel(str, Enum):
    RADIO = "radio"
    VOICE = "voice"
    FACE_TO_FACE = "face_to_face"


class SoundType(str, Enum):
    TALK = "talk"
    COMBAT = "combat"
    PAIN = "pain"
    JOY = "joy"
    WARNING = "warning"


def validity_for(message_type: MessageType) -> float:
    if message_type == MessageType.HELP:
        return HELP_VALIDITY_SEC
    return DEFAULT_VALIDITY_SEC


@dataclass(frozen=True)
class Message:
    id: int
    sender_id: str
    type: MessageType
    position: Vec2
    timestamp: float
    channel: Channel = Channel.RADIO

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_live(self, now: float) -> bool:
        return self.age(now) < validity_for(self.type)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "type": self.type.value,
            "position": self.position.to_dict(),
            "timestamp": round(self.timestamp, 2),
            "channel": self.channel.value,
        }


@dataclass(frozen=True)
class HeardSound:
    source_id: str
    sound_type: SoundType
    weight: float
    timestamp: float


@dataclass
class CommsConfig:
    voice_range: float = 16.0
    face_to_face_range: float = 3.0
    facing_half_angle: float = 45.0
    # per-agent gates on autonomous sends; operator controls skip them
    communication_cooldown: float = 5.0
    face_to_face_cooldown: float = 10.0

    @classmethod
    def from_env(cls) -> "CommsConfig":
        return cls(
            voice_range=env_float("COMMS_VOICE_RANGE", 16.0, 1.0, 200.0),
            face_to_face_range=env_float("COMMS_FACE_TO_FACE_RANGE", 3.0, 0.5, 20.0),
            facing_half_angle=env_float("COMMS_FACING_HALF_ANGLE", 45.0, 1.0, 90.0),
            communication_cooldown=env_float("COMMS_COMMUNICATION_COOLDOWN", 5.0, 0.0, 600.0),
            face_to_face_cooldown=env_float("COMMS_FACE_TO_FACE_COOLDOWN", 10.0, 0.0, 600.0),
        )


class Communicator:
    """Receiver-side endpoint owned by one agent."""

    def __init__(
        self,
        agent_id: str,
        position: Callable[[], Vec2],
        forward: Callable[[], Vec2],
        clock: Callable[[], float],
        needs: "NeedsModel | None" = None,
    ) -> None:
        self.agent_id = agent_id
        self.needs = needs
        self.bus: CommunicationBus | None = None
        self.active = False
        self._position = position
        self._forward = forward
        self._clock = clock
        self._history: deque[Message] = deque(maxlen=HISTORY_LIMIT)
        self._sent: deque[Message] = deque(maxlen=HISTORY_LIMIT)
        self._heard: deque[HeardSound] = deque(maxlen=HISTORY_LIMIT)
        self._read: set[int] = set()
        self._listeners: list[Callable[[Message], None]] = []

    def position(self) -> Vec2:
        return self._position()

    def forward(self) -> Vec2:
        return self._forward()

    def subscribe(self, callback: Callable[[Message], None]) -> None:
        self._listeners.append(callback)

    def reset(self) -> None:
        self._history.clear()
        self._sent.clear()
        self._heard.clear()
        self._read.clear()

    # -- delivery --------------------------------------------------------

    def receive(self, message: Message | None) -> bool:
        if message is None or not message.sender_id:
            LOGGER.warning("dropped message without sender receiver=%s", self.agent_id)
            return False
        if message.sender_id == self.agent_id:
            return False

        self._history.append(message)
        if message.channel == Channel.RADIO and self.needs is not None:
            self.needs.record_social_interaction(SocialInteraction.RADIO)
        for callback in list(self._listeners):
            try:
                callback(message)
            except Exception:
                LOGGER.exception("message listener failed receiver=%s", self.agent_id)
        return True

    def hear(self, sound: HeardSound) -> None:
        if sound.source_id == self.agent_id:
            return
        self._heard.append(sound)
        if sound.sound_type == SoundType.TALK and sound.weight > NEAR_TALK_WEIGHT and self.needs is not None:
            self.needs.record_social_interaction(SocialInteraction.VOICE_TALK, sound.weight)

    def record_sent(self, message: Message) -> None:
        self._sent.append(message)

    # -- queries ---------------------------------------------------------

    def latest_message(self, message_type: MessageType, unread_only: bool = False) -> Message | None:
        now = self._clock()
        for message in reversed(self._history):
            if message.type != message_type or not message.sender_id:
                continue
            if unread_only and message.id in self._read:
                continue
            if message.is_live(now):
                return message
        return None

    def has_recent_message(self, message_type: MessageType, window: float = RECENT_WINDOW_SEC) -> bool:
        now = self._clock()
        return any(message.type == message_type and now - message.timestamp < window for message in self._history)

    def recent_messages(self, count: int = 10) -> list[Message]:
        if count <= 0:
            return []
        return list(self._history)[-count:]

    def live_messages(self, unread_only: bool = True) -> list[Message]:
        now = self._clock()
        return [
            message
            for message in reversed(self._history)
            if message.is_live(now) and not (unread_only and message.id in self._read)
        ]

    def sent_messages(self) -> list[Message]:
        return list(self._sent)

    def heard_sounds(self) -> list[HeardSound]:
        return list(self._heard)

    def mark_read(self, message_id: int) -> None:
        self._read.add(message_id)
        retained = {message.id for message in self._history}
        self._read &= retained

    def is_read(self, message_id: int) -> bool:
        return message_id in self._read

    # -- outgoing --------------------------------------------------------

    def send(self, message_type: MessageType, position: Vec2 | None = None) -> Message | None:
        if self.bus is None:
            LOGGER.warning("send without bus sender=%s type=%s", self.agent_id, message_type.value)
            return None
        return self.bus.broadcast(self, message_type, position)

    def make_sound(self, sound_type: SoundType, volume: float = 1.0) -> int:
        if self.bus is None:
            return 0
        return self.bus.emit(self, sound_type, volume)

    def try_face_to_face(self) -> "Communicator | None":
        if self.bus is None:
            return None
        return self.bus.try_face_to_face(self)

    def nearby_agents(self) -> list["Communicator"]:
        if self.bus is None:
            return []
        return self.bus.nearby(self)


class CommunicationBus:
    """World-scoped roster of communicators; delivery is synchronous at send time."""

    def __init__(self, clock: Callable[[], float], config: CommsConfig | None = None) -> None:
        self.config = config or CommsConfig()
        self._clock = clock
        self._roster: dict[str, Communicator] = {}
        self._ids = itertools.count(1)

    def register(self, communicator: Communicator) -> None:
        self.prune()
        communicator.bus = self
        communicator.active = True
        self._roster[communicator.agent_id] = communicator
        LOGGER.info("communicator joined agent=%s roster=%d", communicator.agent_id, len(self._roster))

    def deregister(self, communicator: Communicator | str) -> Communicator | None:
        agent_id = communicator if isinstance(communicator, str) else communicator.agent_id
        removed = self._roster.pop(agent_id, None)
        if removed is not None:
            removed.active = False
            removed.bus = None
            LOGGER.info("communicator left agent=%s roster=%d", agent_id, len(self._roster))
        return removed

    def prune(self) -> int:
        stale = [agent_id for agent_id, communicator in self._roster.items() if not communicator.active]
        for agent_id in stale:
            self._roster.pop(agent_id, None)
        return len(stale)

    def clear(self) -> None:
        for communicator in self._roster.values():
            communicator.active = False
            communicator.bus = None
        self._roster.clear()

    def members(self) -> list[Communicator]:
        return [communicator for communicator in self._roster.values() if communicator.active]

    def get(self, agent_id: str) -> Communicator | None:
        return self._roster.get(agent_id)

    def __len__(self) -> int:
        return len(self._roster)

    def _others(self, sender: Communicator) -> list[Communicator]:
        return [c for c in self._roster.values() if c.active and c.agent_id != sender.agent_id]

    def _is_member(self, sender: Communicator | None) -> bool:
        return sender is not None and self._roster.get(sender.agent_id) is sender

    # -- radio -----------------------------------------------------------

    def broadcast(
        self,
        sender: Communicator | None,
        message_type: MessageType,
        position: Vec2 | None = None,
    ) -> Message | None:
        if not self._is_member(sender):
            return None

        message = Message(
            id=next(self._ids),
            sender_id=sender.agent_id,
            type=message_type,
            position=position if position is not None else sender.position(),
            timestamp=self._clock(),
            channel=Channel.RADIO,
        )
        sender.record_sent(message)
        delivered = sum(1 for receiver in self._others(sender) if receiver.receive(message))
        LOGGER.info(
            "radio message sender=%s type=%s receivers=%d",
            sender.agent_id,
            message_type.value,
            delivered,
        )
        return message

    # -- voice -----------------------------------------------------------

    def emit(
        self,
        sender: Communicator | None,
        sound_type: SoundType,
        volume: float = 1.0,
        message_type: MessageType | None = None,
        exclude: Collection[str] = (),
    ) -> int:
        if not self._is_member(sender):
            return 0

        origin = sender.position()
        now = self._clock()
        voice_range = self.config.voice_range
        message: Message | None = None
        if message_type is not None:
            message = Message(
                id=next(self._ids),
                sender_id=sender.agent_id,
                type=message_type,
                position=origin,
                timestamp=now,
                channel=Channel.VOICE,
            )
            sender.record_sent(message)

        heard = 0
        for receiver in self._others(sender):
            if receiver.agent_id in exclude:
                continue
            distance = distance_2d(origin, receiver.position())
            if distance > voice_range:
                continue
            weight = (1.0 - distance / voice_range) * volume
            receiver.hear(HeardSound(sender.agent_id, sound_type, weight, now))
            if message is not None:
                receiver.receive(message)
            heard += 1
        return heard

    def nearby(self, communicator: Communicator) -> list[Communicator]:
        origin = communicator.position()
        in_range = [
            (distance_2d(origin, other.position()), other)
            for other in self._others(communicator)
        ]
        in_range = [pair for pair in in_range if pair[0] <= self.config.voice_range]
        in_range.sort(key=lambda pair: pair[0])
        return [other for _distance, other in in_range]

    # -- face to face ----------------------------------------------------

    def find_facing(self, communicator: Communicator) -> Communicator | None:
        origin = communicator.position()
        forward = communicator.forward()
        half_angle = self.config.facing_half_angle
        best: tuple[float, Communicator] | None = None
        for other in self._others(communicator):
            to_other = other.position() - origin
            distance = to_other.length
            if distance > self.config.face_to_face_range:
                continue
            if angle_between(forward, to_other) >= half_angle:
                continue
            if angle_between(other.forward(), -to_other) >= half_angle:
                continue
            if best is None or distance < best[0]:
                best = (distance, other)
        return best[1] if best is not None else None

    def try_face_to_face(self, speaker: Communicator | None) -> Communicator | None:
        if not self._is_member(speaker):
            return None

        listener = self.find_facing(speaker)
        if listener is None:
            return None

        if speaker.needs is not None:
            speaker.needs.record_social_interaction(SocialInteraction.FACE_TO_FACE_SPEAK)
        if listener.needs is not None:
            listener.needs.record_social_interaction(SocialInteraction.FACE_TO_FACE_LISTEN)

        message = Message(
            id=next(self._ids),
            sender_id=speaker.agent_id,
            type=MessageType.CHAT,
            position=speaker.position(),
            timestamp=self._clock(),
            channel=Channel.FACE_TO_FACE,
        )
        speaker.record_sent(message)
        listener.receive(message)

        self.emit(speaker, SoundType.TALK, exclude={speaker.agent_id, listener.agent_id})
        LOGGER.info("face to face talk speaker=%s listener=%s", speaker.agent_id, listener.agent_id)
        return listener
