"""
Engine service: the reference scheduler.

This service is responsible for:
- Building the repository and dispatcher for the configured backend
- Running the detection, correlation and escalation/cleanup cycles on
  independent intervals
- Logging cycle failures without stopping the other loops
- Graceful shutdown on SIGINT/SIGTERM

Usage:
    python -m siem_engine

Environment Variables:
    CONFIG_PATH: Path to config directory (default: config)
    REDIS_URL: Redis connection URL (default: redis://localhost:6379)
    LOG_LEVEL: Logging level (default: INFO)
    SIEM_STORAGE_BACKEND: memory or redis
"""

import asyncio
import os
import signal
import sys
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from siem_engine.config.loader import ConfigLoadError, load_config
from siem_engine.config.models import AppConfig, StorageBackend
from siem_engine.correlation.engine import CorrelationEngine, create_correlation_engine
from siem_engine.detection.engine import DetectionEngine, create_detection_engine
from siem_engine.detection.escalation import EscalationMonitor, create_escalation_monitor
from siem_engine.detection.materializer import AlertMaterializer
from siem_engine.detection.notifications import (
    CompositeNotificationDispatcher,
    LogNotificationDispatcher,
)
from siem_engine.interfaces.notifier import NotificationDispatcher
from siem_engine.interfaces.repository import EventRepository
from siem_engine.services.logging import setup_logging
from siem_engine.storage.memory import InMemoryEventRepository
from siem_engine.storage.redis_connection import RedisConnection
from siem_engine.storage.redis_queue import RedisNotificationQueue
from siem_engine.storage.redis_repository import RedisEventRepository

logger = structlog.get_logger(__name__)


class EngineService:
    """
    Hosts the three engine cycles as asyncio tasks.

    Attributes:
        config: Engine configuration.
        shutdown_event: Set to stop every loop.
        repository: Event and alert store.
        dispatcher: Notification intent sink.
        detection_engine: Detection cycle owner.
        correlation_engine: Correlation cycle owner.
        escalation_monitor: Escalation/cleanup cycle owner.

    Example:
        >>> service = EngineService(AppConfig())
        >>> await service.run()
    """

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.shutdown_event = asyncio.Event()
        self.redis_connection: Optional[RedisConnection] = None
        self.repository: Optional[EventRepository] = None
        self.dispatcher: Optional[NotificationDispatcher] = None
        self.materializer: Optional[AlertMaterializer] = None
        self.detection_engine: Optional[DetectionEngine] = None
        self.correlation_engine: Optional[CorrelationEngine] = None
        self.escalation_monitor: Optional[EscalationMonitor] = None
        self._tasks: List[asyncio.Task[Any]] = []

    async def _initialize(self) -> None:
        """Build storage, dispatcher and engines."""
        backend = self.config.service.storage_backend
        log_dispatcher = LogNotificationDispatcher()

        if backend == StorageBackend.REDIS:
            self.redis_connection = RedisConnection(self.config.redis)
            await self.redis_connection.connect()
            self.repository = RedisEventRepository(self.redis_connection)
            self.dispatcher = CompositeNotificationDispatcher(
                [log_dispatcher, RedisNotificationQueue(self.redis_connection)]
            )
        else:
            self.repository = InMemoryEventRepository()
            self.dispatcher = log_dispatcher

        self.materializer = AlertMaterializer(
            repository=self.repository,
            dispatcher=self.dispatcher,
            immediate_channels=self.config.escalation.immediate_channels,
            max_locks=self.config.escalation.max_tracked_keys,
        )
        self.detection_engine = create_detection_engine(
            self.repository, self.materializer, self.config.detection
        )
        self.correlation_engine = create_correlation_engine(
            self.repository, self.materializer, self.config.correlation
        )
        self.escalation_monitor = create_escalation_monitor(
            repository=self.repository,
            dispatcher=self.dispatcher,
            tiers=self.config.escalation.tiers,
            materializer=self.materializer,
            detection_engine=self.detection_engine,
        )

        logger.info(
            "engine_service_initialized",
            storage_backend=backend.value,
            schedule=self.config.service.schedule.model_dump(),
        )

    async def _cycle_loop(
        self,
        name: str,
        interval_seconds: int,
        cycle: Callable[[], Awaitable[Any]],
    ) -> None:
        """Run a cycle every interval until shutdown; failures are logged."""
        try:
            while not self.shutdown_event.is_set():
                try:
                    await cycle()
                except Exception as e:
                    logger.error(f"{name}_loop_error", error=str(e))

                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval_seconds)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.debug(f"{name}_loop_cancelled")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                # Not supported on this platform's event loop
                pass

    def request_shutdown(self) -> None:
        """Ask every loop to stop after its current cycle."""
        if not self.shutdown_event.is_set():
            logger.info("shutdown_requested")
            self.shutdown_event.set()

    async def run(self) -> None:
        """Initialize, run the three loops until shutdown, then clean up."""
        await self._initialize()
        if (
            self.detection_engine is None
            or self.correlation_engine is None
            or self.escalation_monitor is None
        ):
            raise RuntimeError("Service not properly initialized")

        self._install_signal_handlers()
        schedule = self.config.service.schedule
        self._tasks = [
            asyncio.create_task(
                self._cycle_loop(
                    "detection",
                    schedule.detection_interval_seconds,
                    self.detection_engine.run_detection_cycle,
                )
            ),
            asyncio.create_task(
                self._cycle_loop(
                    "correlation",
                    schedule.correlation_interval_seconds,
                    self.correlation_engine.run_correlation_cycle,
                )
            ),
            asyncio.create_task(
                self._cycle_loop(
                    "escalation",
                    schedule.escalation_interval_seconds,
                    self.escalation_monitor.run_escalation_cycle,
                )
            ),
        ]

        logger.info("engine_service_started")
        try:
            await self.shutdown_event.wait()
        finally:
            await self._cleanup()

    async def _cleanup(self) -> None:
        """Cancel loops and close connections."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.redis_connection is not None:
            await self.redis_connection.disconnect()

        logger.info("engine_service_stopped")


async def main() -> None:
    """Main entry point."""
    config_path = os.getenv("CONFIG_PATH", "config")

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        setup_logging()
        logger.error("config_load_failed", error=str(e), file_path=e.file_path)
        sys.exit(1)

    setup_logging(config.log_level, config.service.logging.format)
    logger.info("engine_service_starting", config_path=config_path)

    service = EngineService(config)
    try:
        await service.run()
    except Exception as e:
        logger.error("service_failed", error=str(e))
        sys.exit(1)


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
