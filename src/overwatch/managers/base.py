"""
Base manager abstract class for Overwatch.

This module provides the foundation for all manager components with:
- Common initialization patterns
- Lifecycle management (initialize/start/stop)
- Periodic jobs registered on the shared scheduler
- Health checking
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..storage.store import OrchestrationStore
from ..utils.clock import Clock
from ..utils.errors import ErrorCategory, OverwatchError
from ..utils.logging import get_logger
from ..utils.message_bus import MessageBus
from ..utils.metrics import MetricsCollector
from ..utils.scheduler import JobCallback, ScheduledJob, Scheduler


class ManagerState(Enum):
    """Manager lifecycle states."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class ManagerError(OverwatchError):
    """Base exception for manager errors."""
    code = "MANAGER_ERROR"
    default_message = "Manager error"
    category = ErrorCategory.INTERNAL


class ManagerNotReadyError(ManagerError):
    """Raised when manager operation is called before initialization."""
    code = "MANAGER_NOT_READY"


@dataclass
class HealthStatus:
    """Health status information."""
    healthy: bool
    last_check: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "last_check": self.last_check.isoformat(),
            "details": self.details,
            "error": self.error,
        }


class BaseManager(ABC):
    """
    Abstract base class for all manager components.

    Subclasses share one store, clock, scheduler and message bus. Periodic
    work is registered with ``_every`` in ``_schedule_jobs``, which runs after
    ``_start`` and again on ``reschedule``. Jobs are cancelled automatically
    on ``stop``.
    """

    def __init__(
        self,
        name: str,
        store: Optional[OrchestrationStore],
        scheduler: Scheduler,
        bus: MessageBus,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.name = name
        self.store = store
        self.scheduler = scheduler
        self.bus = bus
        self.clock = clock or scheduler.clock
        self.metrics = metrics or MetricsCollector()
        self.logger = get_logger(f"overwatch.managers.{name}")
        self.state = ManagerState.UNINITIALIZED
        self._jobs: List[ScheduledJob] = []
        self._health_status = HealthStatus(healthy=True, last_check=self.clock.now())

    @property
    def is_ready(self) -> bool:
        """Check if manager is ready for operations."""
        return self.state in (ManagerState.READY, ManagerState.RUNNING)

    @property
    def is_running(self) -> bool:
        return self.state == ManagerState.RUNNING

    async def initialize(self) -> None:
        """Perform component setup and transition to READY."""
        if self.state != ManagerState.UNINITIALIZED:
            raise ManagerError(f"Cannot initialize {self.name} from state: {self.state.value}")

        self.state = ManagerState.INITIALIZING
        self.logger.info("initializing_manager", manager=self.name)

        try:
            await self._initialize()
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("initialization_failed", manager=self.name, error=str(e), exc_info=True)
            raise ManagerError(f"Failed to initialize {self.name}: {e}", cause=e) from e

        self.state = ManagerState.READY
        self.logger.info("manager_initialized", manager=self.name)

    async def start(self) -> None:
        """Begin periodic work."""
        if not self.is_ready:
            raise ManagerNotReadyError(f"Manager {self.name} not ready")
        if self.is_running:
            return

        self.state = ManagerState.STARTING
        try:
            await self._start()
            self._schedule_jobs()
        except Exception as e:
            self.state = ManagerState.ERROR
            self._cancel_jobs()
            self.logger.error("start_failed", manager=self.name, error=str(e), exc_info=True)
            raise ManagerError(f"Failed to start {self.name}: {e}", cause=e) from e

        self.state = ManagerState.RUNNING
        self.logger.info("manager_started", manager=self.name, jobs=[job.name for job in self._jobs])

    async def stop(self) -> None:
        """Stop periodic work. Safe to call more than once."""
        if self.state in (ManagerState.STOPPED, ManagerState.UNINITIALIZED):
            return

        self.state = ManagerState.STOPPING
        self._cancel_jobs()
        try:
            await self._stop()
        finally:
            self.state = ManagerState.STOPPED
            self.logger.info("manager_stopped", manager=self.name)

    async def health_check(self) -> HealthStatus:
        """Return current health status of the manager."""
        try:
            details = await self._health_check()
            details.setdefault("state", self.state.value)
            self._health_status = HealthStatus(
                healthy=self.state != ManagerState.ERROR,
                last_check=self.clock.now(),
                details=details
            )
        except Exception as e:
            self._health_status = HealthStatus(
                healthy=False,
                last_check=self.clock.now(),
                details={"state": self.state.value},
                error=str(e)
            )
            self.logger.error("health_check_failed", manager=self.name, error=str(e))

        return self._health_status

    def reschedule(self) -> None:
        """Re-register periodic jobs so changed intervals take effect."""
        if not self.is_running:
            return
        for job in self._jobs:
            if job.is_periodic:
                job.cancel()
        self._jobs = [job for job in self._jobs if not job.cancelled]
        self._schedule_jobs()
        self.logger.info("manager_rescheduled", manager=self.name, jobs=[job.name for job in self._jobs])

    def _schedule_jobs(self) -> None:
        """Register periodic jobs with ``_every``. No jobs by default."""

    def _every(self, interval: float, callback: JobCallback, name: str, initial_delay: Optional[float] = None) -> ScheduledJob:
        job = self.scheduler.call_every(interval, callback, name=name, initial_delay=initial_delay)
        self._jobs.append(job)
        return job

    def _later(self, delay: float, callback: JobCallback, name: str) -> ScheduledJob:
        job = self.scheduler.call_later(delay, callback, name=name)
        self._jobs = [j for j in self._jobs if not j.cancelled and (j.is_periodic or j.runs == 0)]
        self._jobs.append(job)
        return job

    def _cancel_jobs(self) -> None:
        for job in self._jobs:
            job.cancel()
        self._jobs.clear()

    def _require_ready(self) -> None:
        if not self.is_ready:
            raise ManagerNotReadyError(f"Manager {self.name} not ready (state: {self.state.value})")

    # Abstract methods to be implemented by subclasses

    @abstractmethod
    async def _initialize(self) -> None:
        """Component-specific initialization logic."""
        pass

    @abstractmethod
    async def _start(self) -> None:
        """Component-specific start logic."""
        pass

    @abstractmethod
    async def _stop(self) -> None:
        """Component-specific stop logic."""
        pass

    @abstractmethod
    async def _health_check(self) -> Dict[str, Any]:
        """Component-specific health check logic."""
        pass


__all__ = [
    'BaseManager',
    'HealthStatus',
    'ManagerState',
    'ManagerError',
    'ManagerNotReadyError',
]
