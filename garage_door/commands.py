"""
Door commands: turn a requested position into opener button presses.
"""

import asyncio
import logging
from typing import Optional, Dict, Iterable

from garage_door.engine import DoorStateEngine
from garage_door.gpio import ActuatorPort
from garage_door.states import Target

logger = logging.getLogger(__name__)


class PulseSequencer:
    """Press the opener button a number of times, one pulse per press."""

    def __init__(self, actuator: ActuatorPort, dwell: float = 0.5):
        self.actuator = actuator
        self.dwell = dwell

    async def run(self, pin: Optional[int], presses: int) -> None:
        for press in range(presses):
            logger.debug(f"Pressing button on GPIO pin {pin} ({press + 1}/{presses})")
            await self.actuator.pulse(pin, self.dwell)


class CommandIntake:
    """
    Entry point for door position requests.

    At most one press sequence runs per door; a request arriving while one is
    still in progress is rejected.
    """

    def __init__(self, engines: Iterable[DoorStateEngine], sequencer: PulseSequencer):
        self.engines: Dict[str, DoorStateEngine] = {engine.door_id: engine for engine in engines}
        self.sequencer = sequencer
        self._in_flight: Dict[str, asyncio.Task] = {}

    def busy(self, door_id: str) -> bool:
        task = self._in_flight.get(door_id)
        return task is not None and not task.done()

    def set_target(self, door_id: str, target) -> Optional[asyncio.Task]:
        """
        Request the door move to an open or closed position.

        Must be called from within the running event loop.

        Args:
            door_id: Door name as configured
            target: Target, "open"/"close", or HomeKit TargetDoorState value

        Returns:
            The press sequence task, or None when nothing is pressed
        """
        engine = self.engines[door_id]
        target = Target.parse(target)

        if engine.door.push_button is None:
            logger.warning(f"Door '{door_id}' has no open/close relay configured, ignoring {target.value}")
            return None
        if self.busy(door_id):
            logger.warning(f"Door '{door_id}' is still pressing the button, ignoring {target.value}")
            return None

        presses = engine.plan_command(target)
        if presses == 0:
            return None

        logger.info(f"Door '{door_id}' commanded to {target.value} ({presses} press{'es' if presses > 1 else ''})")
        task = asyncio.get_running_loop().create_task(self._press(engine, presses))
        self._in_flight[door_id] = task
        task.add_done_callback(lambda done: self._forget(door_id, done))
        return task

    def _forget(self, door_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(door_id) is task:
            del self._in_flight[door_id]

    async def _press(self, engine: DoorStateEngine, presses: int) -> None:
        try:
            await self.sequencer.run(engine.door.push_button, presses)
        except asyncio.CancelledError:
            logger.warning(f"Button press sequence for '{engine.door_id}' cancelled")
            raise
        except Exception as e:
            logger.error(f"Button press sequence for '{engine.door_id}' failed: {e}")

    async def drain(self) -> None:
        """Wait for any press sequences still running."""
        tasks = [task for task in self._in_flight.values() if not task.done()]
        if tasks:
            logger.info(f"Waiting for {len(tasks)} button press sequence(s) to finish")
            await asyncio.gather(*tasks, return_exceptions=True)
