"""
Event sinks receiving door status notifications.

Supports log output, a JSON history file, CloudWatch metrics/logs and Slack
notifications.
"""

import asyncio
import json
import logging
import threading
import time
import urllib.request
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List, Protocol, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import retry, stop_after_attempt, wait_exponential

from garage_door.config import CloudWatchConfig, SlackConfig
from garage_door.states import EventKind, StatusEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def notify(self, door_id: str, event: StatusEvent) -> None:
        """Receive a status event for a door."""


def run_blocking(func, *args) -> Optional[asyncio.Future]:
    """
    Run a blocking call off the event loop when one is running.

    Without a running loop the call is made directly and None is returned.
    Otherwise the executor future is returned; a failure is logged when it
    completes.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        func(*args)
        return None
    future = loop.run_in_executor(None, func, *args)
    future.add_done_callback(lambda done: _log_background_failure(func, done))
    return future


def _log_background_failure(func, future: asyncio.Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        name = getattr(func, "__qualname__", repr(func))
        logger.error(f"Background call {name} failed: {error}", exc_info=error)


class FanOutEventSink:
    """Deliver each event to every sink; one failing sink does not stop the rest."""

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks or [])

    def add(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def notify(self, door_id: str, event: StatusEvent) -> None:
        for sink in self.sinks:
            try:
                sink.notify(door_id, event)
            except Exception as e:
                logger.error(
                    f"Error in event sink {type(sink).__name__} for {event.kind.value} on '{door_id}': {e}",
                    exc_info=True,
                )


class LoggingEventSink:
    """Log door status lines; movement is logged once per direction change."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger
        self._moving: Dict[str, Any] = {}

    def notify(self, door_id: str, event: StatusEvent) -> None:
        kind = event.kind
        if kind is EventKind.MOVING:
            if self._moving.get(door_id) is not event.direction:
                self._moving[door_id] = event.direction
                self.log.debug(f"Door '{door_id}' is {event.direction.value}")
            return
        if kind in (EventKind.OBSTRUCTION, EventKind.CLEAR):
            # Obstruction changes are logged by the engine
            return

        self._moving.pop(door_id, None)
        note = " (assumed, no sensor confirmation)" if event.assumed else ""
        if kind is EventKind.CLOSED:
            self.log.info(f"Door '{door_id}' is closed{note}")
        elif kind is EventKind.OPENED:
            self.log.warning(f"Door '{door_id}' is open{note}")
        elif kind is EventKind.STOPPED:
            self.log.debug(f"Door '{door_id}' has stopped moving")
        elif kind is EventKind.FAULT:
            last = event.last_status.value if event.last_status else "unknown"
            self.log.error(f"Door '{door_id}' is reporting fault with sensors (last status {last})")


class HistoryEventSink:
    """
    Record open/closed history to a JSON file.

    Entries are ``{"door": name, "time": epoch seconds, "status": 0|1}`` where
    0 is closed and 1 is open. A stopped door counts as open. An entry is
    skipped when the door's previous entry has the same status.
    """

    STATUS_VALUES = {
        EventKind.CLOSED: 0,
        EventKind.OPENED: 1,
        EventKind.STOPPED: 1,
    }

    def __init__(self, history_file: str, max_entries: int = 1000):
        self.path = Path(history_file)
        self.max_entries = max_entries
        self.entries: List[Dict[str, Any]] = self._load()
        self._lock = threading.Lock()
        self._version = 0
        self._written = 0

    def _load(self) -> List[Dict[str, Any]]:
        try:
            if self.path.exists():
                data = json.loads(self.path.read_text())
                if isinstance(data, list):
                    return data
                logger.warning(f"History file {self.path} is not a list, starting new history")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not load history file: {e}")
        return []

    def _save(self) -> None:
        self._version += 1
        run_blocking(self._write, json.dumps(self.entries, indent=2), self._version)

    def _write(self, data: str, version: int) -> None:
        # Executor writes may finish out of order; never replace newer history
        with self._lock:
            if version <= self._written:
                return
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o755)
                self.path.write_text(data)
            except OSError as e:
                logger.error(f"Couldn't save history: {e}")
            self._written = version

    def last_entry(self, door_id: str) -> Optional[Dict[str, Any]]:
        for entry in reversed(self.entries):
            if entry.get("door") == door_id:
                return entry
        return None

    def notify(self, door_id: str, event: StatusEvent) -> None:
        status = self.STATUS_VALUES.get(event.kind)
        if status is None:
            return
        last = self.last_entry(door_id)
        if last is not None and last.get("status") == status:
            return

        self.entries.append({"door": door_id, "time": int(time.time()), "status": status})
        if len(self.entries) > self.max_entries:
            self.entries = self.entries[-self.max_entries:]
        self._save()


class CloudWatchEventSink:
    """Send door state metrics and log events to CloudWatch."""

    def __init__(self, config: CloudWatchConfig, session=None):
        self.config = config
        self.enabled = config.enabled
        self._last: Dict[Tuple[str, str], EventKind] = {}

        if not self.enabled:
            return
        try:
            session = session or boto3.Session(region_name=config.aws_region)
            self.cloudwatch = session.client("cloudwatch")
            self.logs_client = session.client("logs")
            self._setup_cloudwatch_logs()
            logger.info("CloudWatch integration initialized successfully")
        except (BotoCoreError, ClientError) as e:
            logger.error(f"CloudWatch initialization failed: {e}")
            self.enabled = False

    def _setup_cloudwatch_logs(self) -> None:
        """Create CloudWatch log group and stream if they don't exist."""
        try:
            self.logs_client.create_log_group(logGroupName=self.config.log_group)
            logger.info(f"Created CloudWatch log group: {self.config.log_group}")
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceAlreadyExistsException":
                raise

        try:
            self.logs_client.create_log_stream(
                logGroupName=self.config.log_group,
                logStreamName=self.config.log_stream,
            )
            logger.info(f"Created CloudWatch log stream: {self.config.log_stream}")
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceAlreadyExistsException":
                raise

    def send_metric(
        self,
        metric_name: str,
        value: float,
        unit: str = "Count",
        dimensions: Optional[Dict[str, str]] = None,
    ) -> bool:
        """Send custom metric to CloudWatch."""
        if not self.enabled:
            return False

        dimensions = dimensions or {"DeviceId": self.config.device_id}
        try:
            self.cloudwatch.put_metric_data(
                Namespace=self.config.namespace,
                MetricData=[{
                    "MetricName": metric_name,
                    "Value": value,
                    "Unit": unit,
                    "Timestamp": datetime.now(timezone.utc),
                    "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
                }],
            )
            logger.debug(f"Sent CloudWatch metric: {metric_name} = {value}")
            return True
        except Exception as e:
            logger.error(f"Failed to send CloudWatch metric: {e}")
            return False

    def send_log_event(self, message: str, level: str = "INFO", door_id: Optional[str] = None) -> bool:
        """Send log event to CloudWatch Logs."""
        if not self.enabled:
            return False

        now = datetime.now(timezone.utc)
        try:
            self.logs_client.put_log_events(
                logGroupName=self.config.log_group,
                logStreamName=self.config.log_stream,
                logEvents=[{
                    "timestamp": int(now.timestamp() * 1000),
                    "message": json.dumps({
                        "timestamp": now.isoformat(),
                        "level": level,
                        "device_id": self.config.device_id,
                        "door": door_id,
                        "message": message,
                    }),
                }],
            )
            logger.debug(f"Sent CloudWatch log: {message}")
            return True
        except Exception as e:
            logger.error(f"Failed to send CloudWatch log: {e}")
            return False

    def send_door_event(self, door_id: str, event: StatusEvent) -> None:
        dimensions = {"DeviceId": self.config.device_id, "Door": door_id}
        if event.kind is EventKind.FAULT:
            self.send_metric("DoorFaults", 1.0, "Count", dimensions)
            self.send_log_event(f"Door {door_id} sensor fault", "ERROR", door_id)
            return
        if event.kind is EventKind.OBSTRUCTION:
            self.send_metric("DoorObstructions", 1.0, "Count", dimensions)
            self.send_log_event(f"Door {door_id} obstruction detected", "WARN", door_id)
            return
        if event.kind is EventKind.CLEAR:
            self.send_log_event(f"Door {door_id} obstruction cleared", "INFO", door_id)
            return

        self.send_metric("DoorState", 1.0 if event.kind is not EventKind.CLOSED else 0.0, "None", dimensions)
        self.send_metric("DoorStateChanges", 1.0, "Count", dimensions)
        suffix = " (assumed after timeout)" if event.assumed else ""
        level = "INFO" if event.kind is EventKind.CLOSED else "WARN"
        self.send_log_event(f"Door {door_id} {event.kind.value}{suffix}", level, door_id)

    def notify(self, door_id: str, event: StatusEvent) -> None:
        if not self.enabled or event.kind is EventKind.MOVING:
            return
        # Obstruction arrives every tick; only changes are shipped
        if self._last.get((door_id, "obstruction")) is event.kind:
            return
        if event.kind in (EventKind.OBSTRUCTION, EventKind.CLEAR):
            self._last[(door_id, "obstruction")] = event.kind
        run_blocking(self.send_door_event, door_id, event)

    def send_system_health(self) -> None:
        if not self.enabled:
            return
        self.send_metric("SystemHealth", 1.0, "Count")
        self.send_log_event("System health check passed", "INFO")


class SlackEventSink:
    """Post door open/closed/fault notifications to a Slack webhook."""

    COLORS = {
        EventKind.OPENED: "warning",
        EventKind.CLOSED: "good",
        EventKind.FAULT: "danger",
    }

    def __init__(self, config: SlackConfig):
        self.config = config
        self.enabled = config.enabled and bool(config.webhook_url)
        if config.enabled and not config.webhook_url:
            logger.warning("Slack enabled in config but no webhook_url set")

    def should_notify(self, event: StatusEvent) -> bool:
        if event.kind is EventKind.OPENED:
            return self.config.notify_open
        if event.kind is EventKind.CLOSED:
            return self.config.notify_closed
        if event.kind is EventKind.FAULT:
            return self.config.notify_fault
        return False

    @staticmethod
    def format_message(door_id: str, event: StatusEvent) -> str:
        if event.kind is EventKind.FAULT:
            return f"❌ Door {door_id} is reporting a sensor fault"
        note = " (no sensor confirmation)" if event.assumed else ""
        return f"🚪 Door {door_id} {event.kind.value}{note}"

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=8), reraise=True)
    def send_slack(self, message: str, color: str = "good") -> None:
        """Send Slack notification"""
        payload = {
            "channel": self.config.channel,
            "username": self.config.username,
            "icon_emoji": self.config.icon_emoji,
            "attachments": [{"color": color, "text": message, "ts": int(time.time())}],
        }
        request = urllib.request.Request(
            self.config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        with urllib.request.urlopen(request, timeout=self.config.timeout) as response:
            if response.getcode() != 200:
                raise RuntimeError(f"Slack returned {response.getcode()}")

    def _deliver(self, message: str, color: str) -> None:
        try:
            self.send_slack(message, color)
        except Exception as e:
            logger.warning(f"Slack notification failed: {e}")

    def notify(self, door_id: str, event: StatusEvent) -> None:
        if not self.enabled or not self.should_notify(event):
            return
        run_blocking(self._deliver, self.format_message(door_id, event), self.COLORS[event.kind])
