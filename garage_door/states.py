"""
Door status vocabulary shared by the engine, the command intake and the sinks.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class DoorStatus(Enum):
    """Externally reported door status."""
    CLOSED = "closed"
    OPENED = "open"
    OPENING = "opening"
    CLOSING = "closing"
    STOPPED = "stopped"
    FAULT = "fault"


class ConfirmedStatus(Enum):
    """Last resting state seen, used to infer which way the door moves next."""
    CLOSED = "closed"
    OPENED = "open"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class Direction(Enum):
    OPENING = "opening"
    CLOSING = "closing"


class Target(Enum):
    OPEN = "open"
    CLOSE = "close"

    @classmethod
    def parse(cls, value) -> "Target":
        """Accept a Target, "open"/"close", or a HomeKit TargetDoorState (0 open, 1 closed)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid door target: {value!r}")
        if isinstance(value, int):
            if value == 0:
                return cls.OPEN
            if value == 1:
                return cls.CLOSE
            raise ValueError(f"Invalid door target: {value!r}")
        if isinstance(value, str):
            text = value.strip().lower()
            if text in ("open", "opened"):
                return cls.OPEN
            if text in ("close", "closed"):
                return cls.CLOSE
        raise ValueError(f"Invalid door target: {value!r}")


class ButtonBehavior(Enum):
    STOP_THEN_REVERSE = "stop-then-reverse"
    AUTO_REVERSE = "auto-reverse"
    ALWAYS_TOGGLE = "always-toggle"


class EventKind(Enum):
    CLOSED = "closed"
    OPENED = "open"
    MOVING = "moving"
    STOPPED = "stopped"
    FAULT = "fault"
    OBSTRUCTION = "obstruction"
    CLEAR = "clear"


# Resting targets and the status that satisfies them
TARGET_STATUS = {
    Target.OPEN: DoorStatus.OPENED,
    Target.CLOSE: DoorStatus.CLOSED,
}

MOVING_STATUS = {
    Direction.OPENING: DoorStatus.OPENING,
    Direction.CLOSING: DoorStatus.CLOSING,
}


@dataclass(frozen=True)
class StatusEvent:
    """
    A door status notification.

    Attributes:
        kind: What happened
        direction: Inferred direction, MOVING events only
        duration: Milliseconds since movement was first detected, MOVING events only
        last_status: Last confirmed resting state, attached to FAULT events
        assumed: True when a resting state was reached by timeout, not by sensor
    """

    kind: EventKind
    direction: Optional[Direction] = None
    duration: Optional[int] = None
    last_status: Optional[ConfirmedStatus] = None
    assumed: bool = False
