"""
GPIO access for door sensors and the opener relay.

Two backends are provided: RPi.GPIO for Pi 1-4 boards, and gpiozero for
boards where RPi.GPIO is not supported (Pi 5). Sensors are wired with a
pull-down, so HIGH means the sensor is asserted.
"""

import asyncio
import logging
from typing import Optional, Dict, Iterable, Protocol

try:
    import RPi.GPIO as GPIO
except (ImportError, RuntimeError):
    GPIO = None

from gpiozero import DigitalInputDevice, DigitalOutputDevice

from garage_door.config import DoorConfig

logger = logging.getLogger(__name__)


class SensorPort(Protocol):
    def read(self, pin: Optional[int]) -> Optional[bool]:
        """Return True/False, or None when the pin is unset or unreadable."""


class ActuatorPort(Protocol):
    async def pulse(self, pin: Optional[int], dwell: float) -> None:
        """Drive the pin active for dwell seconds, then inactive for dwell seconds."""


class GpioPort:
    """Shared read/pulse handling; subclasses supply the pin primitives."""

    def setup(self, doors: Iterable[DoorConfig]) -> None:
        for door in doors:
            if door.push_button is not None:
                self._setup_output(door.push_button)
                logger.debug(f"Setup open/close relay on '{door.name}' using GPIO pin {door.push_button}")
            for role in ("closed_sensor", "open_sensor", "obstruction_sensor"):
                pin = getattr(door, role)
                if pin is not None:
                    self._setup_input(pin)
                    logger.debug(f"Setup {role.replace('_', ' ')} on '{door.name}' using GPIO pin {pin}")

    def read(self, pin: Optional[int]) -> Optional[bool]:
        if pin is None:
            return None
        try:
            return self._read_pin(pin)
        except Exception as e:
            logger.error(f"Failed to read GPIO pin {pin}: {e}")
            return None

    async def pulse(self, pin: Optional[int], dwell: float) -> None:
        if pin is None:
            return
        # Hold the relay for the dwell so the opener registers a button press
        self._write_pin(pin, True)
        try:
            await asyncio.sleep(dwell)
        finally:
            self._write_pin(pin, False)
        await asyncio.sleep(dwell)

    def _setup_input(self, pin: int) -> None:
        raise NotImplementedError

    def _setup_output(self, pin: int) -> None:
        raise NotImplementedError

    def _read_pin(self, pin: int) -> bool:
        raise NotImplementedError

    def _write_pin(self, pin: int, active: bool) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class RPiGpioPort(GpioPort):
    """RPi.GPIO backend using BCM numbering."""

    def __init__(self):
        self.test_mode = GPIO is None
        if self.test_mode:
            logger.warning("RPi.GPIO not available - running in test mode")
        else:
            GPIO.setwarnings(False)
            GPIO.setmode(GPIO.BCM)

    def _setup_input(self, pin: int) -> None:
        if not self.test_mode:
            GPIO.setup(pin, GPIO.IN, pull_up_down=GPIO.PUD_DOWN)

    def _setup_output(self, pin: int) -> None:
        if not self.test_mode:
            GPIO.setup(pin, GPIO.OUT, initial=GPIO.LOW)

    def _read_pin(self, pin: int) -> bool:
        if self.test_mode:
            return False
        return GPIO.input(pin) == GPIO.HIGH

    def _write_pin(self, pin: int, active: bool) -> None:
        if not self.test_mode:
            GPIO.output(pin, GPIO.HIGH if active else GPIO.LOW)

    def close(self) -> None:
        if not self.test_mode:
            GPIO.cleanup()
        logger.info("GPIO cleanup completed")


class GpioZeroPort(GpioPort):
    """gpiozero backend, one device object per pin."""

    def __init__(self, pin_factory=None):
        self.pin_factory = pin_factory
        self.inputs: Dict[int, DigitalInputDevice] = {}
        self.outputs: Dict[int, DigitalOutputDevice] = {}

    def _setup_input(self, pin: int) -> None:
        self.inputs[pin] = DigitalInputDevice(pin, pull_up=False, pin_factory=self.pin_factory)

    def _setup_output(self, pin: int) -> None:
        self.outputs[pin] = DigitalOutputDevice(pin, initial_value=False, pin_factory=self.pin_factory)

    def _read_pin(self, pin: int) -> bool:
        device = self.inputs.get(pin)
        if device is None:
            raise RuntimeError(f"GPIO pin {pin} was not set up as an input")
        return bool(device.value)

    def _write_pin(self, pin: int, active: bool) -> None:
        device = self.outputs.get(pin)
        if device is None:
            raise RuntimeError(f"GPIO pin {pin} was not set up as an output")
        if active:
            device.on()
        else:
            device.off()

    def close(self) -> None:
        for device in list(self.outputs.values()) + list(self.inputs.values()):
            device.close()
        self.outputs.clear()
        self.inputs.clear()
        logger.info("GPIO cleanup completed")


def create_port(backend: str = "rpi", pin_factory=None) -> GpioPort:
    if backend == "gpiozero":
        return GpioZeroPort(pin_factory=pin_factory)
    if backend == "rpi":
        return RPiGpioPort()
    raise ValueError(f"Unknown GPIO backend: {backend}")
