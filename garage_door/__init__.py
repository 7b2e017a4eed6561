"""
garage_door: garage door state monitoring and opener control for Raspberry Pi.

- Door state inference from closed/open/obstruction sensors
- Opener relay control with reversal handling
- Status events to log, history, CloudWatch and Slack
"""

__version__ = "1.0.0"

from garage_door.states import DoorStatus, Direction, Target, ButtonBehavior, EventKind, StatusEvent
from garage_door.config import DoorConfig, ConfigurationError, load_config
from garage_door.engine import DoorState, DoorStateEngine
from garage_door.commands import CommandIntake, PulseSequencer
from garage_door.scheduler import DoorScheduler

__all__ = [
    "DoorStatus",
    "Direction",
    "Target",
    "ButtonBehavior",
    "EventKind",
    "StatusEvent",
    "DoorConfig",
    "ConfigurationError",
    "load_config",
    "DoorState",
    "DoorStateEngine",
    "CommandIntake",
    "PulseSequencer",
    "DoorScheduler",
]
