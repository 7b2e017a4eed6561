"""
Configuration loading for the garage door daemon.

Doors are declared as ``[door:<name>]`` sections of an INI file, e.g.::

    [door:Main Garage]
    push_button = 16
    closed_sensor = 26
    open_sensor = 20
    open_time = 30
    close_time = 30
    button_behavior = stop-then-reverse
"""

import logging
import uuid
import zlib
from configparser import ConfigParser, SectionProxy, Error as ConfigParserError
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from garage_door.states import ButtonBehavior

logger = logging.getLogger(__name__)

# Default paths
CONFIG_FILE = "/etc/garage_door/config.ini"
LOG_FILE = "/var/log/garage_door.log"
HISTORY_FILE = "/var/lib/garage_door/history.json"
PID_FILE = "/var/run/garage_door/garage_door.pid"

# Usable BCM GPIO pins on the 40 pin header
MIN_GPIO_PIN = 0
MAX_GPIO_PIN = 26

MIN_MOVE_TIME = 0
MAX_MOVE_TIME = 300
DEFAULT_MOVE_TIME = 30

DOOR_SECTION_PREFIX = "door:"


class ConfigurationError(Exception):
    """Configuration-related errors."""
    pass


@dataclass(frozen=True)
class DoorConfig:
    name: str
    push_button: Optional[int] = None
    closed_sensor: Optional[int] = None
    open_sensor: Optional[int] = None
    obstruction_sensor: Optional[int] = None
    open_time: float = DEFAULT_MOVE_TIME
    close_time: float = DEFAULT_MOVE_TIME
    button_behavior: ButtonBehavior = ButtonBehavior.STOP_THEN_REVERSE
    manufacturer: str = ""
    model: str = ""
    serial_number: str = ""

    @property
    def description(self) -> str:
        return f"{self.manufacturer} {self.model}".strip() or self.name

    def pins(self) -> List[Tuple[str, int]]:
        """Configured (role, pin) pairs."""
        roles = [
            ("push_button", self.push_button),
            ("closed_sensor", self.closed_sensor),
            ("open_sensor", self.open_sensor),
            ("obstruction_sensor", self.obstruction_sensor),
        ]
        return [(role, pin) for role, pin in roles if pin is not None]


@dataclass
class CloudWatchConfig:
    enabled: bool = False
    aws_region: str = "us-east-1"
    namespace: str = "GarageDoor"
    log_group: str = "/garage-door/events"
    log_stream: str = "door-events"
    device_id: str = "garage-door-001"


@dataclass
class SlackConfig:
    enabled: bool = False
    webhook_url: Optional[str] = None
    channel: str = "#alerts"
    username: str = "Garage Door"
    icon_emoji: str = ":door:"
    notify_open: bool = True
    notify_closed: bool = False
    notify_fault: bool = True
    timeout: int = 10


@dataclass
class DaemonConfig:
    doors: List[DoorConfig]
    debug: bool = False
    poll_interval: float = 1.0
    pulse_dwell: float = 0.5
    gpio_backend: str = "rpi"
    health_check_interval: int = 300
    log_file: str = LOG_FILE
    history_file: Optional[str] = HISTORY_FILE
    pid_file: str = PID_FILE
    cloudwatch: CloudWatchConfig = field(default_factory=CloudWatchConfig)
    slack: SlackConfig = field(default_factory=SlackConfig)


def _parse_pin(section: SectionProxy, key: str, door_name: str) -> Optional[int]:
    """Read an optional GPIO pin, dropping anything outside the header range."""
    raw = section.get(key, fallback="").strip()
    if raw == "":
        return None
    try:
        pin = int(raw)
    except ValueError:
        logger.warning(f"Door '{door_name}': {key} '{raw}' is not a GPIO pin number, ignoring")
        return None
    if pin < MIN_GPIO_PIN or pin > MAX_GPIO_PIN:
        logger.warning(
            f"Door '{door_name}': {key} pin {pin} outside {MIN_GPIO_PIN}-{MAX_GPIO_PIN}, ignoring"
        )
        return None
    return pin


def _parse_move_time(section: SectionProxy, key: str, door_name: str) -> float:
    raw = section.get(key, fallback="").strip()
    if raw == "":
        return DEFAULT_MOVE_TIME
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Door '{door_name}': {key} '{raw}' invalid, using {DEFAULT_MOVE_TIME}s")
        return DEFAULT_MOVE_TIME
    clamped = min(max(value, MIN_MOVE_TIME), MAX_MOVE_TIME)
    if clamped != value:
        logger.warning(f"Door '{door_name}': {key} {value}s clamped to {clamped}s")
    return clamped


def _parse_behavior(section: SectionProxy, door_name: str) -> ButtonBehavior:
    raw = section.get("button_behavior", fallback=ButtonBehavior.STOP_THEN_REVERSE.value)
    try:
        return ButtonBehavior(raw.strip().lower())
    except ValueError:
        valid = ", ".join(b.value for b in ButtonBehavior)
        raise ConfigurationError(
            f"Door '{door_name}': button_behavior '{raw}' must be one of {valid}"
        )


def _default_serial_number() -> str:
    return str(zlib.crc32(str(uuid.uuid4()).upper().encode("utf-8")))


def parse_door(section_name: str, section: SectionProxy) -> DoorConfig:
    """Build a DoorConfig from a ``[door:<name>]`` section."""
    name = section_name[len(DOOR_SECTION_PREFIX):].strip()
    if not name:
        raise ConfigurationError(f"Section [{section_name}] has no door name")

    door = DoorConfig(
        name=name,
        push_button=_parse_pin(section, "push_button", name),
        closed_sensor=_parse_pin(section, "closed_sensor", name),
        open_sensor=_parse_pin(section, "open_sensor", name),
        obstruction_sensor=_parse_pin(section, "obstruction_sensor", name),
        open_time=_parse_move_time(section, "open_time", name),
        close_time=_parse_move_time(section, "close_time", name),
        button_behavior=_parse_behavior(section, name),
        manufacturer=section.get("manufacturer", fallback="").strip(),
        model=section.get("model", fallback="").strip(),
        serial_number=section.get("serial_number", fallback="").strip() or _default_serial_number(),
    )

    if door.push_button is None:
        logger.warning(f"No valid relay pin specified for door open/close button on '{door.name}'")
        logger.warning(f"Door '{door.name}' cannot be operated, status reporting only")
    if door.closed_sensor is None and door.open_sensor is None:
        logger.warning(f"Door '{door.name}' has no position sensors, it will never report open or closed")
    return door


def check_pin_reuse(doors: List[DoorConfig]) -> None:
    """Reject a GPIO pin assigned to more than one role or door."""
    owners: Dict[int, str] = {}
    for door in doors:
        for role, pin in door.pins():
            owner = f"{door.name}/{role}"
            if pin in owners:
                raise ConfigurationError(f"GPIO pin {pin} used by both {owners[pin]} and {owner}")
            owners[pin] = owner


def load_config(config_file: str = CONFIG_FILE) -> DaemonConfig:
    """Load and validate configuration from INI file."""
    if not Path(config_file).exists():
        raise ConfigurationError(f"Configuration file not found: {config_file}")

    config = ConfigParser()
    try:
        config.read(config_file)
    except ConfigParserError as e:
        raise ConfigurationError(f"Configuration file {config_file} is invalid: {e}") from e

    return parse_config(config)


def parse_config(config: ConfigParser) -> DaemonConfig:
    doors = [
        parse_door(name, config[name])
        for name in config.sections()
        if name.startswith(DOOR_SECTION_PREFIX)
    ]
    if not doors:
        raise ConfigurationError("Configuration does not have any doors defined")
    if len({door.name for door in doors}) != len(doors):
        raise ConfigurationError("Door names must be unique")
    check_pin_reuse(doors)

    backend = config.get("options", "gpio_backend", fallback="rpi").strip().lower()
    if backend not in ("rpi", "gpiozero"):
        raise ConfigurationError(f"gpio_backend '{backend}' must be 'rpi' or 'gpiozero'")

    try:
        result = DaemonConfig(
            doors=doors,
            debug=config.getboolean("options", "debug", fallback=False),
            poll_interval=config.getfloat("options", "poll_interval", fallback=1.0),
            pulse_dwell=config.getfloat("options", "pulse_dwell", fallback=0.5),
            gpio_backend=backend,
            health_check_interval=config.getint("options", "health_check_interval", fallback=300),
            log_file=config.get("paths", "log_file", fallback=LOG_FILE),
            history_file=config.get("paths", "history_file", fallback=HISTORY_FILE) or None,
            pid_file=config.get("paths", "pid_file", fallback=PID_FILE),
            cloudwatch=CloudWatchConfig(
                enabled=config.getboolean("cloudwatch", "enabled", fallback=False),
                aws_region=config.get("cloudwatch", "aws_region", fallback="us-east-1"),
                namespace=config.get("cloudwatch", "namespace", fallback="GarageDoor"),
                log_group=config.get("cloudwatch", "log_group", fallback="/garage-door/events"),
                log_stream=config.get("cloudwatch", "log_stream", fallback="door-events"),
                device_id=config.get("cloudwatch", "device_id", fallback="garage-door-001"),
            ),
            slack=SlackConfig(
                enabled=config.getboolean("slack", "enabled", fallback=False),
                webhook_url=config.get("slack", "webhook_url", fallback=None),
                channel=config.get("slack", "channel", fallback="#alerts"),
                username=config.get("slack", "username", fallback="Garage Door"),
                icon_emoji=config.get("slack", "icon_emoji", fallback=":door:"),
                notify_open=config.getboolean("slack", "notify_open", fallback=True),
                notify_closed=config.getboolean("slack", "notify_closed", fallback=False),
                notify_fault=config.getboolean("slack", "notify_fault", fallback=True),
                timeout=config.getint("slack", "timeout", fallback=10),
            ),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid option value: {e}") from e

    if result.poll_interval <= 0 or result.pulse_dwell <= 0:
        raise ConfigurationError("poll_interval and pulse_dwell must be positive")
    return result


def summarize(config: DaemonConfig) -> Dict[str, Any]:
    """Door summary used for the startup log line."""
    return {
        door.name: {role: pin for role, pin in door.pins()}
        for door in config.doors
    }
