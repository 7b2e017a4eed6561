"""
Door state inference.

Each door gets one DoorStateEngine. Every poll tick reads the closed, open and
obstruction sensors and works out whether the door is closed, open, moving or
faulted. Moving is time-bounded: if a sensor does not confirm the far
position within the configured open/close time, the door is assumed to have
got there anyway.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Callable, Dict, Any

from garage_door.config import DoorConfig
from garage_door.gpio import SensorPort
from garage_door.sinks import EventSink
from garage_door.states import (
    DoorStatus,
    ConfirmedStatus,
    Direction,
    Target,
    ButtonBehavior,
    EventKind,
    StatusEvent,
    TARGET_STATUS,
    MOVING_STATUS,
)

logger = logging.getLogger(__name__)


@dataclass
class DoorState:
    current_status: DoorStatus = DoorStatus.STOPPED
    last_confirmed: ConfirmedStatus = ConfirmedStatus.UNKNOWN
    last_direction: Direction = Direction.OPENING
    move_started: Optional[float] = None
    last_obstruction: Optional[bool] = None
    # Resting status reached by timeout; holds while both sensors stay false
    assumed_rest: bool = False


class DoorStateEngine:
    """Sensor fusion state machine for a single door."""

    def __init__(
        self,
        door: DoorConfig,
        sensors: SensorPort,
        sink: EventSink,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.door = door
        self.sensors = sensors
        self.sink = sink
        self.clock = clock
        self.state = self._seed_state()

    @property
    def door_id(self) -> str:
        return self.door.name

    @property
    def status(self) -> DoorStatus:
        return self.state.current_status

    @property
    def has_position_sensors(self) -> bool:
        return self.door.closed_sensor is not None or self.door.open_sensor is not None

    def _seed_state(self) -> DoorState:
        state = DoorState()
        closed = self.sensors.read(self.door.closed_sensor)
        opened = self.sensors.read(self.door.open_sensor)
        if closed is True and opened is not True:
            state.last_confirmed = ConfirmedStatus.CLOSED
            state.last_direction = Direction.OPENING
        elif opened is True and closed is not True:
            state.last_confirmed = ConfirmedStatus.OPENED
            state.last_direction = Direction.CLOSING
        logger.debug(
            f"Door '{self.door_id}' starting with last confirmed {state.last_confirmed.value}, "
            f"assumed direction {state.last_direction.value}"
        )
        return state

    def _emit(self, event: StatusEvent) -> None:
        self.sink.notify(self.door_id, event)

    def _read_position(self, pin: Optional[int]) -> Optional[bool]:
        # An unconfigured position sensor never confirms its position
        if pin is None:
            return False
        return self.sensors.read(pin)

    def poll(self) -> None:
        """Run one poll tick."""
        self._check_obstruction()

        if not self.has_position_sensors:
            self._no_position_sensors()
            return

        closed = self._read_position(self.door.closed_sensor)
        opened = self._read_position(self.door.open_sensor)

        if closed is None or opened is None or (closed and opened):
            self._fault(closed, opened)
        elif closed:
            self._rest(ConfirmedStatus.CLOSED)
        elif opened:
            self._rest(ConfirmedStatus.OPENED)
        else:
            self._transit()

    def _check_obstruction(self) -> None:
        if self.door.obstruction_sensor is None:
            return
        obstruction = self.sensors.read(self.door.obstruction_sensor)
        if obstruction is None:
            return

        if obstruction != self.state.last_obstruction:
            if obstruction:
                logger.warning(f"Door '{self.door_id}' is reporting an obstruction")
            elif self.state.last_obstruction is not None:
                logger.info(f"Door '{self.door_id}' obstruction has cleared")
            self.state.last_obstruction = obstruction

        # Sent every tick, consumers treat it as a level
        self._emit(StatusEvent(EventKind.OBSTRUCTION if obstruction else EventKind.CLEAR))

    def _no_position_sensors(self) -> None:
        self.state.last_confirmed = ConfirmedStatus.STOPPED
        if self.state.current_status is not DoorStatus.STOPPED:
            self.state.current_status = DoorStatus.STOPPED
            self._emit(StatusEvent(EventKind.STOPPED))

    def _fault(self, closed: Optional[bool], opened: Optional[bool]) -> None:
        if self.state.current_status is DoorStatus.FAULT:
            return
        logger.debug(
            f"Door '{self.door_id}' sensor fault: closed={closed} open={opened} "
            f"last confirmed {self.state.last_confirmed.value}"
        )
        self.state.current_status = DoorStatus.FAULT
        self._emit(StatusEvent(EventKind.FAULT, last_status=self.state.last_confirmed))

    def _rest(self, confirmed: ConfirmedStatus, assumed: bool = False) -> None:
        state = self.state
        state.move_started = None
        state.assumed_rest = assumed
        state.last_confirmed = confirmed

        if confirmed is ConfirmedStatus.CLOSED:
            status, kind = DoorStatus.CLOSED, EventKind.CLOSED
            state.last_direction = Direction.OPENING
        else:
            status, kind = DoorStatus.OPENED, EventKind.OPENED
            state.last_direction = Direction.CLOSING

        if state.current_status is not status:
            state.current_status = status
            self._emit(StatusEvent(kind, assumed=assumed))

    def infer_direction(self) -> Direction:
        if self.state.last_confirmed is ConfirmedStatus.CLOSED:
            return Direction.OPENING
        if self.state.last_confirmed is ConfirmedStatus.OPENED:
            return Direction.CLOSING
        return self.state.last_direction

    def _transit(self) -> None:
        state = self.state
        if state.assumed_rest:
            # A fault since the timeout clears back to the assumed position
            self._rest(state.last_confirmed, assumed=True)
            return

        now = self.clock()
        if state.move_started is None:
            state.move_started = now
        elapsed = now - state.move_started
        direction = self.infer_direction()

        if direction is Direction.OPENING:
            limit, resting = self.door.open_time, ConfirmedStatus.OPENED
        else:
            limit, resting = self.door.close_time, ConfirmedStatus.CLOSED

        if elapsed >= limit:
            logger.warning(
                f"Door '{self.door_id}' has been {direction.value} for {elapsed:.1f}s without "
                f"sensor confirmation, assuming {resting.value}"
            )
            self._rest(resting, assumed=True)
            return

        state.current_status = MOVING_STATUS[direction]
        self._emit(StatusEvent(EventKind.MOVING, direction=direction, duration=int(elapsed * 1000)))

    def plan_command(self, target: Target) -> int:
        """
        Record the intent of a move command and return how many button presses it needs.

        Does not change the reported status; the next poll confirms movement.

        Args:
            target: Requested resting position

        Returns:
            Number of presses, 0 when the door already reports the target
        """
        state = self.state
        if state.current_status is TARGET_STATUS[target]:
            logger.debug(f"Door '{self.door_id}' is already {state.current_status.value}, ignoring {target.value}")
            return 0

        reversal = (
            (state.current_status is DoorStatus.OPENING and target is Target.CLOSE)
            or (state.current_status is DoorStatus.CLOSING and target is Target.OPEN)
        )

        # Intent is recorded before the sensors see the move so the next tick
        # infers the commanded direction
        if target is Target.OPEN:
            state.last_confirmed = ConfirmedStatus.CLOSED
            state.last_direction = Direction.OPENING
        else:
            state.last_confirmed = ConfirmedStatus.OPENED
            state.last_direction = Direction.CLOSING
        state.move_started = self.clock()
        state.assumed_rest = False

        if reversal:
            logger.info(f"Door '{self.door_id}' reversing while {state.current_status.value}")
            if self.door.button_behavior is ButtonBehavior.STOP_THEN_REVERSE:
                return 2
        return 1

    def snapshot(self) -> Dict[str, Any]:
        return {
            "door": self.door_id,
            "status": self.state.current_status.value,
            "last_confirmed": self.state.last_confirmed.value,
            "direction": self.state.last_direction.value,
            "obstruction": self.state.last_obstruction,
        }
