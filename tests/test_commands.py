"""Tests for door commands and button press sequencing."""

import asyncio
import time

import pytest

from garage_door.commands import CommandIntake, PulseSequencer
from garage_door.engine import DoorStateEngine
from garage_door.gpio import GpioPort
from garage_door.states import (
    ButtonBehavior,
    ConfirmedStatus,
    Direction,
    DoorStatus,
    EventKind,
    Target,
)

from conftest import BUTTON, CLOSED, OPEN, make_door

DWELL = 0.01


def make_intake(pins, *engines):
    return CommandIntake(engines, PulseSequencer(pins, DWELL))


def start_opening(pins, engine):
    pins.set(CLOSED, True)
    engine.poll()
    pins.set(CLOSED, False)
    engine.poll()
    assert engine.status is DoorStatus.OPENING


class RecordingPort(GpioPort):
    def __init__(self):
        self.writes = []

    def _write_pin(self, pin, active):
        self.writes.append((pin, active, time.monotonic()))


def test_end_to_end_open_with_timeout(pins, make_engine, clock, sink):
    pins.set(CLOSED, True)
    engine = make_engine(open_time=10, close_time=10)
    intake = make_intake(pins, engine)

    engine.poll()
    assert sink.kinds() == [EventKind.CLOSED]

    async def scenario():
        task = intake.set_target("Garage", Target.OPEN)
        assert engine.status is DoorStatus.CLOSED
        await task

    asyncio.run(scenario())
    assert pins.pulses == [(BUTTON, DWELL)]

    pins.set(CLOSED, False)
    clock.advance(1)
    engine.poll()
    moving = sink.last()
    assert moving.kind is EventKind.MOVING
    assert moving.direction is Direction.OPENING
    assert moving.duration == 1000

    clock.advance(10)
    engine.poll()
    assert sink.last().kind is EventKind.OPENED
    assert sink.last().assumed is True
    assert engine.state.move_started is None


def test_reversal_stop_then_reverse_presses_twice(pins, make_engine):
    engine = make_engine(button_behavior=ButtonBehavior.STOP_THEN_REVERSE)
    start_opening(pins, engine)
    intake = make_intake(pins, engine)

    async def scenario():
        task = intake.set_target("Garage", Target.CLOSE)
        assert engine.state.last_confirmed is ConfirmedStatus.OPENED
        assert engine.state.last_direction is Direction.CLOSING
        assert engine.status is DoorStatus.OPENING
        await task

    asyncio.run(scenario())
    assert pins.pulses == [(BUTTON, DWELL), (BUTTON, DWELL)]


@pytest.mark.parametrize("behavior", [ButtonBehavior.AUTO_REVERSE, ButtonBehavior.ALWAYS_TOGGLE])
def test_reversal_single_press_behaviors(pins, make_engine, behavior):
    engine = make_engine(button_behavior=behavior)
    start_opening(pins, engine)
    intake = make_intake(pins, engine)

    async def scenario():
        await intake.set_target("Garage", Target.CLOSE)

    asyncio.run(scenario())
    assert len(pins.pulses) == 1
    assert engine.state.last_confirmed is ConfirmedStatus.OPENED


def test_reversal_while_closing(pins, make_engine, sink):
    pins.set(OPEN, True)
    engine = make_engine()
    engine.poll()
    pins.set(OPEN, False)
    engine.poll()
    intake = make_intake(pins, engine)

    async def scenario():
        await intake.set_target("Garage", "open")

    asyncio.run(scenario())
    assert len(pins.pulses) == 2
    assert engine.state.last_confirmed is ConfirmedStatus.CLOSED

    engine.poll()
    assert sink.last().direction is Direction.OPENING


def test_target_matching_status_is_noop(pins, make_engine):
    pins.set(OPEN, True)
    engine = make_engine()
    engine.poll()
    intake = make_intake(pins, engine)

    async def scenario():
        return intake.set_target("Garage", Target.OPEN)

    assert asyncio.run(scenario()) is None
    assert pins.pulses == []


def test_overlapping_command_rejected(pins, make_engine, caplog):
    pins.set(CLOSED, True)
    engine = make_engine()
    engine.poll()
    intake = make_intake(pins, engine)

    async def scenario():
        first = intake.set_target("Garage", Target.OPEN)
        assert intake.busy("Garage")
        second = intake.set_target("Garage", Target.CLOSE)
        await first
        return second

    assert asyncio.run(scenario()) is None
    assert len(pins.pulses) == 1
    assert engine.state.last_direction is Direction.OPENING
    assert "still pressing the button" in caplog.text
    assert not intake.busy("Garage")


def test_doors_press_independently(pins, sink, clock):
    pins.set(CLOSED, True)
    pins.set(3, True)
    left = DoorStateEngine(make_door("Left"), pins, sink, clock=clock)
    right = DoorStateEngine(
        make_door("Right", push_button=4, closed_sensor=3, open_sensor=5), pins, sink, clock=clock
    )
    left.poll()
    right.poll()
    intake = make_intake(pins, left, right)

    async def scenario():
        tasks = [intake.set_target("Left", "open"), intake.set_target("Right", "open")]
        assert all(task is not None for task in tasks)
        await asyncio.gather(*tasks)

    asyncio.run(scenario())
    assert sorted(pin for pin, _ in pins.pulses) == [4, BUTTON]


def test_door_without_button_cannot_be_commanded(pins, make_engine, caplog):
    pins.set(CLOSED, True)
    engine = make_engine(push_button=None)
    engine.poll()
    intake = make_intake(pins, engine)

    async def scenario():
        return intake.set_target("Garage", Target.OPEN)

    assert asyncio.run(scenario()) is None
    assert pins.pulses == []
    assert engine.state.move_started is None
    assert "no open/close relay" in caplog.text


def test_unknown_door_raises(pins, make_engine):
    intake = make_intake(pins, make_engine())

    with pytest.raises(KeyError):
        intake.set_target("Shed", Target.OPEN)


def test_failed_press_is_logged(pins, make_engine, caplog):
    pins.set(CLOSED, True)
    engine = make_engine()
    engine.poll()

    class BrokenRelay:
        async def pulse(self, pin, dwell):
            raise OSError("relay driver missing")

    intake = CommandIntake([engine], PulseSequencer(BrokenRelay(), DWELL))

    async def scenario():
        await intake.set_target("Garage", Target.OPEN)

    asyncio.run(scenario())
    assert "relay driver missing" in caplog.text


def test_drain_waits_for_presses(pins, make_engine):
    pins.set(CLOSED, True)
    engine = make_engine()
    engine.poll()
    intake = make_intake(pins, engine)

    async def scenario():
        task = intake.set_target("Garage", Target.OPEN)
        await intake.drain()
        return task.done()

    assert asyncio.run(scenario()) is True


@pytest.mark.parametrize(
    "value, expected",
    [
        ("open", Target.OPEN),
        (" Close ", Target.CLOSE),
        ("closed", Target.CLOSE),
        (0, Target.OPEN),
        (1, Target.CLOSE),
        (Target.CLOSE, Target.CLOSE),
    ],
)
def test_target_parse(value, expected):
    assert Target.parse(value) is expected


@pytest.mark.parametrize("value", ["ajar", 2, True, None])
def test_target_parse_rejects(value):
    with pytest.raises(ValueError):
        Target.parse(value)


def test_pulse_sequence_timing():
    port = RecordingPort()
    sequencer = PulseSequencer(port, dwell=0.05)

    started = time.monotonic()
    asyncio.run(sequencer.run(BUTTON, 2))
    elapsed = time.monotonic() - started

    assert [(pin, active) for pin, active, _ in port.writes] == [
        (BUTTON, True), (BUTTON, False), (BUTTON, True), (BUTTON, False),
    ]
    stamps = [stamp for _, _, stamp in port.writes]
    # held high for a dwell, and a full dwell low before the next press
    assert stamps[1] - stamps[0] >= 0.04
    assert stamps[2] - stamps[1] >= 0.04
    assert elapsed >= 0.18


def test_pulse_without_pin_does_nothing():
    port = RecordingPort()

    asyncio.run(PulseSequencer(port, dwell=0.01).run(None, 2))

    assert port.writes == []
