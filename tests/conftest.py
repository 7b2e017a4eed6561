"""Shared fakes for door engine, command and scheduler tests."""

import asyncio
from typing import Optional, Dict, List, Tuple

import pytest

from garage_door.config import DoorConfig
from garage_door.engine import DoorStateEngine
from garage_door.states import ButtonBehavior, EventKind, StatusEvent

BUTTON = 16
CLOSED = 26
OPEN = 20
OBSTRUCTION = 21


class FakePins:
    """In-memory sensor and actuator port."""

    def __init__(self, values: Optional[Dict[int, Optional[bool]]] = None):
        self.values: Dict[int, Optional[bool]] = dict(values or {})
        self.pulses: List[Tuple[int, float]] = []
        self.setup_doors: List[DoorConfig] = []
        self.closed = False
        self.fail_reads = 0

    def set(self, pin: int, value: Optional[bool]) -> None:
        self.values[pin] = value

    def setup(self, doors) -> None:
        self.setup_doors.extend(doors)

    def read(self, pin: Optional[int]) -> Optional[bool]:
        if pin is None:
            return None
        if self.fail_reads:
            self.fail_reads -= 1
            raise RuntimeError("sensor bus error")
        return self.values.get(pin, False)

    async def pulse(self, pin: Optional[int], dwell: float) -> None:
        if pin is None:
            return
        self.pulses.append((pin, dwell))
        await asyncio.sleep(dwell * 2)

    def close(self) -> None:
        self.closed = True


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink:
    def __init__(self):
        self.events: List[Tuple[str, StatusEvent]] = []

    def notify(self, door_id: str, event: StatusEvent) -> None:
        self.events.append((door_id, event))

    def kinds(self, door_id: Optional[str] = None) -> List[EventKind]:
        return [e.kind for d, e in self.events if door_id is None or d == door_id]

    def last(self) -> StatusEvent:
        return self.events[-1][1]

    def clear(self) -> None:
        self.events.clear()


def make_door(name: str = "Garage", **overrides) -> DoorConfig:
    values = dict(
        push_button=BUTTON,
        closed_sensor=CLOSED,
        open_sensor=OPEN,
        obstruction_sensor=None,
        open_time=30,
        close_time=30,
        button_behavior=ButtonBehavior.STOP_THEN_REVERSE,
    )
    values.update(overrides)
    return DoorConfig(name=name, **values)


@pytest.fixture
def pins():
    return FakePins()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_engine(pins, sink, clock):
    def factory(**overrides) -> DoorStateEngine:
        return DoorStateEngine(make_door(**overrides), pins, sink, clock=clock)
    return factory
