from __future__ import annotations

import pytest

from roguemind.agents.needs import NeedsModel
from roguemind.agents.stats import MoodDimension
from roguemind.sim.comms import (
    Channel,
    CommsConfig,
    CommunicationBus,
    Communicator,
    Message,
    MessageType,
    SoundType,
)
from roguemind.sim.movement import Vec2


class Body:
    def __init__(self, x: float, y: float, fx: float = 0.0, fy: float = 1.0) -> None:
        self.position = Vec2(x, y)
        self.forward = Vec2(fx, fy)
        self.needs = NeedsModel()

    def social(self) -> float:
        return self.needs.get_mood(MoodDimension.SOCIAL)


@pytest.fixture
def bus(clock) -> CommunicationBus:
    return CommunicationBus(clock, CommsConfig())


@pytest.fixture
def join(bus, clock):
    bodies: dict[str, Body] = {}

    def _join(agent_id: str, x: float, y: float, fx: float = 0.0, fy: float = 1.0) -> Communicator:
        body = Body(x, y, fx, fy)
        bodies[agent_id] = body
        communicator = Communicator(
            agent_id,
            position=lambda: body.position,
            forward=lambda: body.forward,
            clock=clock,
            needs=body.needs,
        )
        bus.register(communicator)
        return communicator

    _join.bodies = bodies
    return _join


def test_broadcast_reaches_everyone_but_the_sender(bus, join):
    a, b, c = join("a", 0, 0), join("b", 30, 0), join("c", -40, 10)

    message = a.send(MessageType.HELP)

    assert message is not None
    assert message.sender_id == "a"
    assert message.channel == Channel.RADIO
    assert message.position == Vec2(0, 0)
    assert a.recent_messages() == []
    assert a.sent_messages() == [message]
    assert b.latest_message(MessageType.HELP) == message
    assert c.latest_message(MessageType.HELP) == message
    assert join.bodies["b"].social() == pytest.approx(52.0)
    assert join.bodies["a"].social() == pytest.approx(50.0)


def test_broadcast_uses_explicit_position(join):
    a, b = join("a", 0, 0), join("b", 5, 5)

    a.send(MessageType.FOUND_WATER, Vec2(-8.0, 24.0))

    assert b.latest_message(MessageType.FOUND_WATER).position == Vec2(-8.0, 24.0)


def test_non_members_cannot_broadcast(bus, join, clock):
    a, b = join("a", 0, 0), join("b", 1, 0)
    outsider = Communicator("x", lambda: Vec2(0, 0), lambda: Vec2(0, 1), clock)

    assert outsider.send(MessageType.HELP) is None
    assert bus.broadcast(None, MessageType.HELP) is None

    bus.deregister(a)
    assert a.send(MessageType.HELP) is None
    assert b.recent_messages() == []
    assert len(bus) == 1


def test_deregistered_agents_stop_receiving(bus, join):
    a, b = join("a", 0, 0), join("b", 1, 0)
    bus.deregister("b")

    a.send(MessageType.COME_HERE)

    assert b.recent_messages() == []
    assert b.active is False


def test_inactive_members_are_pruned(bus, join):
    a, b = join("a", 0, 0), join("b", 1, 0)
    b.active = False

    assert bus.prune() == 1
    assert bus.members() == [a]


def test_help_goes_stale_before_other_messages(join, clock):
    a, b = join("a", 0, 0), join("b", 1, 0)
    a.send(MessageType.HELP)
    a.send(MessageType.FOUND_PORTAL)

    clock.advance(31.0)

    assert b.latest_message(MessageType.HELP) is None
    assert b.latest_message(MessageType.FOUND_PORTAL) is not None
    assert [message.type for message in b.live_messages()] == [MessageType.FOUND_PORTAL]

    clock.advance(30.0)
    assert b.latest_message(MessageType.FOUND_PORTAL) is None


def test_history_keeps_the_latest_twenty(join):
    a, b = join("a", 0, 0), join("b", 1, 0)
    sent = [a.send(MessageType.COME_HERE) for _ in range(25)]

    history = b.recent_messages(100)

    assert len(history) == 20
    assert history[0].id == sent[5].id
    assert history[-1].id == sent[-1].id
    assert b.recent_messages(0) == []


def test_malformed_and_self_messages_are_dropped(join, clock):
    a = join("a", 0, 0)

    assert a.receive(None) is False
    assert a.receive(Message(1, "", MessageType.HELP, Vec2(0, 0), clock())) is False
    assert a.receive(Message(2, "a", MessageType.HELP, Vec2(0, 0), clock())) is False
    assert a.recent_messages() == []


def test_mark_read_hides_messages_from_unread_queries(join):
    a, b = join("a", 0, 0), join("b", 1, 0)
    help_message = a.send(MessageType.HELP)
    water = a.send(MessageType.FOUND_WATER)

    b.mark_read(help_message.id)

    assert b.is_read(help_message.id)
    assert b.latest_message(MessageType.HELP, unread_only=True) is None
    assert b.latest_message(MessageType.HELP) == help_message
    assert b.live_messages() == [water]
    assert b.live_messages(unread_only=False) == [water, help_message]


def test_has_recent_message_window(join, clock):
    a, b = join("a", 0, 0), join("b", 1, 0)
    a.send(MessageType.FOUND_NPC)

    clock.advance(20.0)
    assert b.has_recent_message(MessageType.FOUND_NPC)
    assert not b.has_recent_message(MessageType.FOUND_NPC, window=10.0)
    assert not b.has_recent_message(MessageType.HELP)


def test_voice_falls_off_with_distance(join):
    a = join("a", 0, 0)
    near, mid, far = join("near", 4, 0), join("mid", 12, 0), join("far", 20, 0)

    heard = a.make_sound(SoundType.TALK)

    assert heard == 2
    assert near.heard_sounds()[0].weight == pytest.approx(0.75)
    assert mid.heard_sounds()[0].weight == pytest.approx(0.25)
    assert far.heard_sounds() == []
    assert join.bodies["near"].social() == pytest.approx(53.75)
    assert join.bodies["mid"].social() == pytest.approx(50.0)


def test_voice_message_reaches_only_listeners_in_range(bus, join):
    a, near, far = join("a", 0, 0), join("near", 4, 0), join("far", 20, 0)

    bus.emit(a, SoundType.WARNING, message_type=MessageType.HELP)

    assert near.latest_message(MessageType.HELP).channel == Channel.VOICE
    assert far.latest_message(MessageType.HELP) is None
    assert a.sent_messages()[0].channel == Channel.VOICE


def test_nearby_agents_sorted_by_distance(join):
    a = join("a", 0, 0)
    join("mid", 10, 0)
    join("near", 2, 0)
    join("far", 30, 0)

    assert [other.agent_id for other in a.nearby_agents()] == ["near", "mid"]


def test_face_to_face_talk(join):
    speaker = join("a", 0, 0, fx=1.0, fy=0.0)
    listener = join("b", 2, 0, fx=-1.0, fy=0.0)
    bystander = join("c", 10, 0)

    partner = speaker.try_face_to_face()

    assert partner is listener
    assert join.bodies["a"].social() == pytest.approx(70.0)
    assert join.bodies["b"].social() == pytest.approx(65.0)
    chat = listener.latest_message(MessageType.CHAT)
    assert chat.channel == Channel.FACE_TO_FACE
    assert chat.sender_id == "a"
    assert [sound.sound_type for sound in bystander.heard_sounds()] == [SoundType.TALK]
    assert listener.heard_sounds() == []


def test_face_to_face_needs_mutual_facing(join):
    speaker = join("a", 0, 0, fx=1.0, fy=0.0)
    join("b", 2, 0, fx=1.0, fy=0.0)

    assert speaker.try_face_to_face() is None
    assert join.bodies["a"].social() == pytest.approx(50.0)


def test_face_to_face_needs_close_range(join):
    speaker = join("a", 0, 0, fx=1.0, fy=0.0)
    join("b", 4, 0, fx=-1.0, fy=0.0)

    assert speaker.try_face_to_face() is None


def test_face_to_face_picks_the_nearest_partner(join):
    speaker = join("a", 0, 0, fx=1.0, fy=0.0)
    join("far", 2.5, 0.5, fx=-1.0, fy=0.0)
    close = join("close", 1.5, 0, fx=-1.0, fy=0.0)

    assert speaker.try_face_to_face() is close
