import pytest

from ive_connect.commands import (
    CommandTranslator,
    DeviceCapabilitySet,
    DevicePreference,
    LinearCommand,
    OscillateCommand,
    RotateCommand,
    VibrateCommand,
    normalize_position,
    to_device_position,
    translate,
)

EVERYTHING = DeviceCapabilitySet(
    can_linear=True, can_vibrate=True, can_rotate=True, can_oscillate=True
)
VIBRATOR = DeviceCapabilitySet(can_vibrate=True, step_resolution={"Vibrate": 20})
STROKER = DeviceCapabilitySet(can_linear=True)


def test_unchanged_position_yields_zero_intensity():
    commands = translate(40, 40, 500, EVERYTHING, DevicePreference())

    speeds = [c.speed for c in commands if not isinstance(c, LinearCommand)]
    assert len(speeds) == 3
    assert all(speed == 0 for speed in speeds)


def test_linear_command_carries_position_and_duration():
    commands = translate(75, 0, 1000, STROKER, DevicePreference())
    assert commands == [LinearCommand(position=0.75, duration_ms=1000)]


def test_disabled_preference_produces_nothing():
    assert translate(100, 0, 500, EVERYTHING, DevicePreference(enabled=False)) == []


def test_capability_and_preference_must_both_allow_a_primitive():
    preference = DevicePreference(use_linear=False)
    commands = translate(100, 0, 500, EVERYTHING, preference)
    kinds = {type(c) for c in commands}
    assert kinds == {VibrateCommand, RotateCommand, OscillateCommand}

    assert translate(100, 0, 500, VIBRATOR, DevicePreference(use_vibrate=False)) == []


def test_intensity_scales_with_movement_and_preference():
    full = translate(100, 80, 500, VIBRATOR, DevicePreference())
    half = translate(100, 80, 500, VIBRATOR, DevicePreference(intensity=0.5))
    assert full == [VibrateCommand(speed=pytest.approx(1.0))]
    assert half == [VibrateCommand(speed=pytest.approx(0.5))]


def test_intensity_is_clamped():
    assert translate(100, 0, 500, VIBRATOR, DevicePreference()) == [VibrateCommand(speed=1.0)]


def test_tiny_movements_are_suppressed():
    # 0.5 position units -> intensity 0.025, below the dead zone
    translator = CommandTranslator()
    assert translator.translate(50.5, 50, 500, VIBRATOR, DevicePreference()) == []


def test_dead_zone_is_configurable():
    translator = CommandTranslator(dead_zone=0.01)
    commands = translator.translate(50.5, 50, 500, VIBRATOR, DevicePreference())
    assert commands == [VibrateCommand(speed=pytest.approx(0.025))]


def test_range_scaling_and_inversion():
    preference = DevicePreference(range_min=0.2, range_max=0.6)
    assert normalize_position(0, preference) == pytest.approx(0.2)
    assert normalize_position(100, preference) == pytest.approx(0.6)
    assert normalize_position(50, preference) == pytest.approx(0.4)

    inverted = DevicePreference(range_min=0.2, range_max=0.6, invert=True)
    assert normalize_position(0, inverted) == pytest.approx(0.6)
    assert to_device_position(100, inverted) == 20


def test_out_of_range_positions_are_clamped():
    assert normalize_position(150, DevicePreference()) == 1.0
    assert normalize_position(-10, DevicePreference()) == 0.0


def test_default_preference_follows_capabilities():
    preference = DevicePreference.from_capabilities(VIBRATOR)
    assert preference.enabled
    assert preference.use_vibrate
    assert not preference.use_linear
    assert not preference.use_rotate


def test_preference_rejects_inverted_range():
    with pytest.raises(ValueError):
        DevicePreference(range_min=0.8, range_max=0.2)
