#!/usr/bin/env python3
"""
Garage Door Daemon
Watches garage door position sensors and operates the opener relay.
"""

import asyncio
import logging
import os
import signal
import sys
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, List

from garage_door import __version__
from garage_door.commands import CommandIntake, PulseSequencer
from garage_door.config import (
    CONFIG_FILE,
    ConfigurationError,
    DaemonConfig,
    load_config,
    summarize,
)
from garage_door.engine import DoorStateEngine
from garage_door.gpio import GpioPort, create_port
from garage_door.scheduler import DoorScheduler
from garage_door.sinks import (
    CloudWatchEventSink,
    FanOutEventSink,
    HistoryEventSink,
    LoggingEventSink,
    SlackEventSink,
)

LOGGER_NAME = "garage_door"


def setup_logging(log_file: Optional[str], debug: bool = False) -> logging.Logger:
    """Configure logging with rotation."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.handlers.clear()

    formatter = logging.Formatter("%(asctime)s - %(levelname)s - [%(name)s] %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True, mode=0o755)
            file_handler = RotatingFileHandler(log_path, maxBytes=1024 * 1024, backupCount=5)
        except OSError as e:
            logger.warning(f"Could not open log file {log_path}: {e}")
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    if debug:
        logger.warning("Debugging has been enabled")
    return logger


class GarageDoorDaemon:
    def __init__(self, config_file: Optional[str] = None, port: Optional[GpioPort] = None):
        """Initialize daemon with configuration."""
        self.config_file = config_file or CONFIG_FILE
        self.config: DaemonConfig = load_config(self.config_file)
        self.logger = setup_logging(self.config.log_file, self.config.debug)
        self.logger.info(f"Loaded configuration from '{self.config_file}'")

        self.sink = FanOutEventSink([LoggingEventSink()])
        if self.config.history_file:
            self.sink.add(HistoryEventSink(self.config.history_file))
        self.cloudwatch = CloudWatchEventSink(self.config.cloudwatch)
        if self.cloudwatch.enabled:
            self.sink.add(self.cloudwatch)
        slack = SlackEventSink(self.config.slack)
        if slack.enabled:
            self.sink.add(slack)

        self.port = port or create_port(self.config.gpio_backend)
        self.port.setup(self.config.doors)
        self.logger.info(f"GPIO initialized: {summarize(self.config)}")

        self.engines: List[DoorStateEngine] = [
            DoorStateEngine(door, self.port, self.sink) for door in self.config.doors
        ]
        self.intake = CommandIntake(self.engines, PulseSequencer(self.port, self.config.pulse_dwell))
        self.scheduler = DoorScheduler(
            self.engines,
            self.intake,
            port=self.port,
            poll_interval=self.config.poll_interval,
            health_interval=self.config.health_check_interval,
            cloudwatch=self.cloudwatch,
        )
        self._stop_event: Optional[asyncio.Event] = None

    def _signal_handler(self, signum: int) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def _check_single_instance(self) -> bool:
        """Ensure only one instance is running."""
        pid_path = Path(self.config.pid_file)
        if pid_path.exists():
            try:
                pid = int(pid_path.read_text().strip())
                os.kill(pid, 0)  # Check if process exists
                self.logger.error(f"Another instance already running (PID: {pid})")
                return False
            except (ValueError, OSError):
                self.logger.warning("Removing stale PID file")
                pid_path.unlink(missing_ok=True)
        return True

    @contextmanager
    def _pid_file_context(self):
        """Manage PID file lifecycle."""
        pid_path = Path(self.config.pid_file)
        try:
            pid_path.parent.mkdir(parents=True, exist_ok=True, mode=0o755)
            pid_path.write_text(str(os.getpid()))
            self.logger.info(f"PID file created: {pid_path}")
            yield
        finally:
            pid_path.unlink(missing_ok=True)
            self.logger.info("PID file removed")

    async def run(self) -> None:
        """Poll doors until stopped."""
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._signal_handler, signum)

        self.logger.info(f"Garage door daemon v{__version__} starting with {len(self.engines)} door(s)")
        self.scheduler.start()
        try:
            await self._stop_event.wait()
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)
            await self.scheduler.stop()
            self.logger.info("Cleanup completed")

    def monitor(self) -> None:
        """Main monitoring entry point."""
        if not self._check_single_instance():
            sys.exit(1)

        with self._pid_file_context():
            try:
                asyncio.run(self.run())
            except Exception as e:
                self.logger.error(f"Error in monitoring loop: {e}")
                raise


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    argv = sys.argv[1:] if argv is None else argv
    config_file = argv[0] if argv else None
    try:
        daemon = GarageDoorDaemon(config_file)
        daemon.monitor()
    except ConfigurationError as e:
        logging.error(f"Configuration error: {e}")
        sys.exit(1)
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
