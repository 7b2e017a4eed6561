"""
Periodic work: one poll task per door plus a system health task.
"""

import asyncio
import logging
from typing import Optional, Dict, Iterable, Any

import psutil

from garage_door.commands import CommandIntake
from garage_door.engine import DoorStateEngine
from garage_door.gpio import GpioPort
from garage_door.sinks import CloudWatchEventSink, run_blocking

logger = logging.getLogger(__name__)

PI_TEMP_FILE = "/sys/class/thermal/thermal_zone0/temp"


def get_cpu_temp() -> Optional[float]:
    try:
        with open(PI_TEMP_FILE, "r") as f:
            return float(f.read()) / 1000.0
    except (OSError, ValueError):
        return None


def get_system_stats() -> Dict[str, Any]:
    return {
        "cpu_usage": psutil.cpu_percent(),
        "memory_usage": psutil.virtual_memory().percent,
        "cpu_temp": get_cpu_temp(),
    }


class DoorScheduler:
    def __init__(
        self,
        engines: Iterable[DoorStateEngine],
        intake: CommandIntake,
        port: Optional[GpioPort] = None,
        poll_interval: float = 1.0,
        health_interval: float = 300,
        cloudwatch: Optional[CloudWatchEventSink] = None,
    ):
        self.engines = list(engines)
        self.intake = intake
        self.port = port
        self.poll_interval = poll_interval
        self.health_interval = health_interval
        self.cloudwatch = cloudwatch
        self._poll_tasks: Dict[str, asyncio.Task] = {}
        self._health_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._poll_tasks.values())

    def start(self) -> None:
        """Start polling every door. Must be called from within the running event loop."""
        loop = asyncio.get_running_loop()
        for engine in self.engines:
            if engine.door_id in self._poll_tasks:
                continue
            self._poll_tasks[engine.door_id] = loop.create_task(
                self._poll_loop(engine), name=f"poll-{engine.door_id}"
            )
        if self.health_interval and self.health_interval > 0 and self._health_task is None:
            self._health_task = loop.create_task(self._health_loop(), name="health")
        logger.info(f"Polling {len(self.engines)} door(s) every {self.poll_interval}s")

    async def _poll_loop(self, engine: DoorStateEngine) -> None:
        while True:
            try:
                engine.poll()
            except Exception as e:
                logger.error(f"Error polling door '{engine.door_id}': {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_interval)
            try:
                self.check_health()
            except Exception as e:
                logger.error(f"Health check failed: {e}")

    def check_health(self) -> Dict[str, Any]:
        stats = get_system_stats()
        logger.info(
            f"Health check - CPU: {stats['cpu_usage']}%, Memory: {stats['memory_usage']}%, "
            f"Temperature: {stats['cpu_temp']}°C"
        )
        for engine in self.engines:
            logger.info(f"Health check - door '{engine.door_id}' is {engine.status.value}")
        if self.cloudwatch is not None and self.cloudwatch.enabled:
            run_blocking(self.cloudwatch.send_system_health)
        return stats

    async def stop(self) -> None:
        """Stop polling, let button presses finish, then release GPIO."""
        tasks = list(self._poll_tasks.values())
        if self._health_task is not None:
            tasks.append(self._health_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_tasks.clear()
        self._health_task = None

        await self.intake.drain()
        if self.port is not None:
            self.port.close()
        logger.info("Door polling stopped")
