from __future__ import annotations

import math

import pytest

from roguemind.agents.needs import NeedsConfig, NeedsModel
from roguemind.agents.stats import (
    ChangeReason,
    ModifierKind,
    MoodDimension,
    NeedType,
    SocialInteraction,
    StatModifier,
)


def test_defaults_and_maxima():
    needs = NeedsModel()

    assert needs.get_stat(NeedType.HEALTH) == 100.0
    assert needs.get_stat(NeedType.ARMOR) == 0.0
    assert needs.get_max(NeedType.BULLETS) == 999.0
    assert needs.get_stat_percentage(NeedType.TOUGHNESS) == pytest.approx(0.5)


def test_tick_depletes_hunger_and_thirst():
    needs = NeedsModel()
    needs.tick(10.0)

    assert needs.get_stat(NeedType.HUNGER) == pytest.approx(95.0)
    assert needs.get_stat(NeedType.THIRST) == pytest.approx(92.0)
    assert needs.get_stat(NeedType.STAMINA) == 100.0


def test_stamina_depletes_while_moving_and_recovers_at_rest():
    needs = NeedsModel()
    needs.set_moving(True)
    needs.tick(2.0)
    assert needs.get_stat(NeedType.STAMINA) == pytest.approx(90.0)

    needs.set_moving(False)
    needs.tick(1.0)
    assert needs.get_stat(NeedType.STAMINA) == pytest.approx(92.0)


def test_restless_mind_speeds_up_thirst():
    needs = NeedsModel()
    needs.mood.load({MoodDimension.MENTALITY: -60.0})
    needs.tick(1.0)

    assert needs.get_stat(NeedType.THIRST) == pytest.approx(100.0 - 0.8 * 1.5)


@pytest.mark.parametrize("dt", [0.0, -1.0, math.nan, math.inf])
def test_tick_ignores_bad_dt(dt):
    needs = NeedsModel()
    needs.tick(dt)

    assert needs.get_stat(NeedType.HUNGER) == 100.0
    assert needs.time_since_spawn == 0.0


def test_modify_stat_clamps_and_notifies_only_on_real_change():
    needs = NeedsModel()
    changes = []
    needs.on_stat_changed(changes.append)

    needs.modify_stat(NeedType.HEALTH, 50.0, ChangeReason.ITEM)
    assert needs.get_stat(NeedType.HEALTH) == 100.0
    assert changes == []

    needs.modify_stat(NeedType.HEALTH, -0.005)
    assert changes == []

    needs.modify_stat(NeedType.HEALTH, -30.0, ChangeReason.COMBAT)
    assert needs.get_stat(NeedType.HEALTH) == pytest.approx(70.0)
    assert len(changes) == 1
    assert changes[0].amount == pytest.approx(-30.0)
    assert changes[0].reason == ChangeReason.COMBAT


def test_modifiers_apply_flat_then_percentage():
    needs = NeedsModel()
    needs.set_stat(NeedType.HEALTH, 50.0)
    needs.add_modifier(StatModifier("boost", NeedType.HEALTH, ModifierKind.PERCENTAGE, 50.0))
    needs.add_modifier(StatModifier("ring", NeedType.HEALTH, ModifierKind.FLAT, 10.0))

    assert needs.get_stat(NeedType.HEALTH) == pytest.approx(90.0)


@pytest.mark.parametrize(
    "kind,magnitude,expected",
    [
        (ModifierKind.FLAT, 500.0, 100.0),
        (ModifierKind.FLAT, -500.0, 0.0),
        (ModifierKind.PERCENTAGE, -300.0, 0.0),
        (ModifierKind.PERCENTAGE, 1e308, 100.0),
    ],
)
def test_effective_value_stays_in_range(kind, magnitude, expected):
    needs = NeedsModel()
    needs.add_modifier(StatModifier("m", NeedType.STAMINA, kind, magnitude))

    assert needs.get_stat(NeedType.STAMINA) == expected


def test_readding_modifier_replaces_it():
    needs = NeedsModel()
    needs.set_stat(NeedType.STAMINA, 50.0)
    needs.add_modifier(StatModifier("m", NeedType.STAMINA, ModifierKind.FLAT, 10.0))
    needs.add_modifier(StatModifier("m", NeedType.STAMINA, ModifierKind.FLAT, 20.0))

    assert len(needs.active_modifiers()) == 1
    assert needs.get_stat(NeedType.STAMINA) == pytest.approx(70.0)
    assert needs.remove_modifier("m") is True
    assert needs.remove_modifier("m") is False
    assert needs.get_stat(NeedType.STAMINA) == pytest.approx(50.0)


def test_timed_modifier_expires_exactly_once():
    needs = NeedsModel()
    needs.set_stat(NeedType.STAMINA, 50.0)
    expired = []
    needs.on_modifier_expired(expired.append)
    needs.add_modifier(StatModifier("haste", NeedType.STAMINA, ModifierKind.FLAT, 20.0, duration=2.0))

    needs.tick(1.0)
    assert expired == []
    assert needs.get_stat(NeedType.STAMINA) == pytest.approx(72.0)

    needs.tick(1.5)
    assert [modifier.id for modifier in expired] == ["haste"]
    assert needs.active_modifiers() == []

    needs.tick(1.0)
    assert len(expired) == 1


def test_health_reaching_zero_kills_once():
    needs = NeedsModel()
    deaths = []
    needs.on_death(deaths.append)
    needs.tick(5.0)

    needs.modify_stat(NeedType.HEALTH, -200.0, ChangeReason.COMBAT)
    needs.modify_stat(NeedType.HUNGER, -200.0)

    assert needs.is_dead
    assert len(deaths) == 1
    assert deaths[0].cause == NeedType.HEALTH
    assert deaths[0].time_survived == pytest.approx(5.0)


def test_mutation_is_inert_while_dead():
    needs = NeedsModel()
    needs.set_stat(NeedType.THIRST, 0.0)
    assert needs.last_death is not None and needs.last_death.cause == NeedType.THIRST

    hunger = needs.get_stat(NeedType.HUNGER)
    needs.modify_stat(NeedType.HUNGER, -10.0)
    needs.set_stat(NeedType.HEALTH, 10.0)
    needs.tick(10.0)

    assert needs.get_stat(NeedType.HUNGER) == hunger
    assert needs.get_stat(NeedType.HEALTH) == 100.0
    assert needs.record_social_interaction(SocialInteraction.RADIO) == 0.0


def test_natural_starvation_kills_through_tick():
    config = NeedsConfig(hunger_rate=50.0)
    needs = NeedsModel(config)
    needs.tick(3.0)

    assert needs.is_dead
    assert needs.last_death.cause == NeedType.HUNGER


def test_respawn_restores_primary_needs_to_fraction():
    needs = NeedsModel(NeedsConfig(respawn_fraction=0.5))
    respawned = []
    needs.on_respawn(lambda: respawned.append(True))
    needs.set_stat(NeedType.MANA, 10.0)
    needs.tick(4.0)
    needs.kill(NeedType.HEALTH)

    assert needs.respawn() is True
    assert not needs.is_dead
    assert respawned == [True]
    assert needs.time_since_spawn == 0.0
    for need in (NeedType.HEALTH, NeedType.HUNGER, NeedType.THIRST, NeedType.STAMINA):
        assert needs.get_stat(need) == pytest.approx(50.0)
    assert needs.get_stat(NeedType.MANA) == pytest.approx(10.0)


def test_respawn_while_alive_is_ignored():
    needs = NeedsModel()
    needs.set_stat(NeedType.HEALTH, 80.0)

    assert needs.respawn() is False
    assert needs.get_stat(NeedType.HEALTH) == pytest.approx(80.0)


def test_listener_failure_does_not_break_the_model():
    needs = NeedsModel()

    def boom(change):
        raise RuntimeError("listener exploded")

    needs.on_stat_changed(boom)
    needs.modify_stat(NeedType.HEALTH, -10.0)

    assert needs.get_stat(NeedType.HEALTH) == pytest.approx(90.0)


def test_snapshot_reports_critical_needs():
    needs = NeedsModel()
    needs.set_stat(NeedType.THIRST, 29.0)
    needs.set_stat(NeedType.HUNGER, 30.0)
    snapshot = needs.snapshot()

    assert snapshot.critical_needs() == [NeedType.THIRST]
    assert snapshot.pct(NeedType.THIRST) == pytest.approx(0.29)
    payload = needs.to_payload()
    assert payload["critical"] == ["thirst"]
    assert payload["death_cause"] is None
    assert payload["mood_overall"] == pytest.approx(needs.mood.overall_score(), abs=0.01)
