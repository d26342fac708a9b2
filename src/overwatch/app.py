"""
Control plane wiring for Overwatch.

``ControlPlane`` builds every component from one ``OverwatchConfig``, shares
a single store, scheduler, clock and message bus between them, and runs
their lifecycle in dependency order.
"""

import asyncio
from typing import Any, Dict, List, Optional

from .health import HealthReporter, HealthServer
from .managers.agent import AgentManager
from .managers.base import BaseManager
from .managers.failure_handler import FailureHandler
from .managers.task_queue import TaskQueue
from .managers.workload import WorkloadMonitor
from .models.agent import AgentStatus, AgentType
from .models.capabilities import CapabilityRegistry
from .orchestration.orchestrator import Orchestrator
from .storage.database import Database
from .storage.store import OrchestrationStore
from .supervision.circuit_breaker import ProcessCircuitBreaker
from .supervision.mutual import MutualMonitoringService
from .supervision.process_manager import Pm2ProcessManager, ProcessManager
from .supervision.self_healing import SelfHealingSupervisor
from .supervision.watchdog import HeartbeatResponder, WatchdogService
from .utils.clock import Clock, SystemClock
from .utils.config import OverwatchConfig
from .utils.errors import error_context
from .utils.logging import get_logger
from .utils.message_bus import AgentMessage, MessageBus, Subscription
from .utils.metrics import MetricsCollector
from .utils.scheduler import Scheduler


logger = get_logger("overwatch.app")


class ControlPlane:
    """Owns and runs every Overwatch component."""

    def __init__(
        self,
        config: OverwatchConfig,
        clock: Optional[Clock] = None,
        process_manager: Optional[ProcessManager] = None,
        bus: Optional[MessageBus] = None
    ):
        self.config = config
        self.clock = clock or SystemClock()
        self.metrics = MetricsCollector()

        self.registry = CapabilityRegistry.from_config(config.registry)
        self.registry.validate(config.watchdog.critical_agent_types)

        self.database = Database(
            config.database.path,
            journal_mode=config.database.journal_mode,
            synchronous=config.database.synchronous,
            busy_timeout_ms=config.database.busy_timeout_ms
        )
        self.store = OrchestrationStore(self.database)
        self.scheduler = Scheduler(self.clock)
        self.bus = bus or MessageBus(
            max_history=config.message_bus.max_history,
            default_timeout=config.message_bus.request_timeout
        )

        shared = dict(clock=self.clock, metrics=self.metrics)
        self.agents = AgentManager(self.store, self.scheduler, self.bus, self.registry, **shared)
        self.tasks = TaskQueue(
            self.store, self.scheduler, self.bus,
            max_retries=config.task_queue.max_retries,
            **shared
        )
        self.workload = WorkloadMonitor(
            self.store, self.scheduler, self.bus, self.agents, self.tasks,
            check_interval=config.workload.check_interval,
            high_threshold=config.workload.high_threshold,
            critical_threshold=config.workload.critical_threshold,
            spawn_task_cap=config.workload.spawn_task_cap,
            **shared
        )
        self.failures = FailureHandler(
            self.store, self.scheduler, self.bus, self.agents, self.tasks,
            failure_penalty=config.failure_handler.failure_penalty,
            restart_bonus=config.failure_handler.restart_bonus,
            recovery_delay=config.failure_handler.recovery_delay,
            **shared
        )
        self.mutual = MutualMonitoringService(
            self.store, self.scheduler, self.bus, self.agents, self.failures,
            check_interval=config.mutual_monitoring.check_interval,
            min_health_score=config.mutual_monitoring.min_health_score,
            heartbeat_timeout=config.mutual_monitoring.heartbeat_timeout,
            auto_pair=config.mutual_monitoring.auto_pair,
            record_failures=config.mutual_monitoring.record_failures,
            **shared
        )
        self.watchdog = WatchdogService(
            self.store, self.scheduler, self.bus, self.agents, self.failures,
            critical_types=config.watchdog.critical_agent_types,
            check_interval=config.watchdog.check_interval,
            heartbeat_timeout=config.watchdog.heartbeat_timeout,
            ping_timeout=config.watchdog.ping_timeout,
            min_health_score=config.watchdog.min_health_score,
            parent_reset_health=config.watchdog.parent_reset_health,
            **shared
        )

        self.self_healing: Optional[SelfHealingSupervisor] = None
        healing = config.self_healing
        if healing.enabled:
            self.self_healing = SelfHealingSupervisor(
                self.scheduler,
                self.bus,
                process_manager or Pm2ProcessManager(binary=healing.pm2_binary),
                breaker=ProcessCircuitBreaker(
                    failure_threshold=healing.failure_threshold,
                    reset_timeout=healing.reset_timeout,
                    max_restarts=healing.max_restarts,
                    restart_window=healing.restart_window,
                    backoff_base=healing.backoff_base,
                    backoff_multiplier=healing.backoff_multiplier,
                    backoff_cap=healing.backoff_cap
                ),
                monitoring_interval=healing.monitoring_interval,
                self_process_name=healing.self_process_name,
                heartbeat_multiplier=healing.heartbeat_multiplier,
                health_url=healing.health_url,
                health_timeout=healing.health_timeout,
                **shared
            )

        self.orchestrator = Orchestrator(
            self.store, self.scheduler, self.bus, self.agents, self.tasks, self.workload,
            decompose_types=config.orchestrator.decompose_types,
            content_threshold=config.orchestrator.content_threshold,
            dispatch_interval=config.orchestrator.dispatch_interval,
            dispatch_batch_size=config.orchestrator.dispatch_batch_size,
            **shared
        )

        self.reporter = HealthReporter(
            self.agents, self.tasks, self.workload, self.failures,
            self_healing=self.self_healing,
            metrics=self.metrics,
            clock=self.clock
        )
        self.health_server: Optional[HealthServer] = None
        if config.health_server.enabled:
            self.health_server = HealthServer(
                self.reporter,
                host=config.health_server.host,
                port=config.health_server.port
            )

        self.self_healing_agent_id: Optional[str] = None
        self._responders: List[HeartbeatResponder] = []
        self._heartbeat_subscription: Optional[Subscription] = None
        self._initialized = False
        self._stop_event = asyncio.Event()

    @property
    def managers(self) -> List[BaseManager]:
        """Managers in start order."""
        managers: List[BaseManager] = [
            self.agents,
            self.tasks,
            self.workload,
            self.failures,
            self.mutual,
            self.watchdog,
        ]
        if self.self_healing is not None:
            managers.append(self.self_healing)
        managers.append(self.orchestrator)
        return managers

    async def initialize(self) -> None:
        """Open the store and initialize every manager."""
        if self._initialized:
            return

        logger.info("initializing_control_plane", app_name=self.config.app_name)
        with error_context("control_plane", "initialize"):
            await self.store.initialize()
            for manager in self.managers:
                await manager.initialize()

            if self.self_healing is not None:
                self.self_healing_agent_id = await self._register_root_agent(AgentType.SELF_HEALING)

            for agent_id in (self.orchestrator.agent_id, self.self_healing_agent_id):
                if agent_id is not None:
                    self._responders.append(HeartbeatResponder(agent_id, self.bus, self.agents).attach())

            self._heartbeat_subscription = self.bus.subscribe_type("agent_heartbeat", self._on_heartbeat)

        self._initialized = True
        logger.info("control_plane_initialized", managers=[m.name for m in self.managers])

    async def start(self) -> None:
        """Start periodic work, the scheduler loop and the health server."""
        await self.initialize()
        for manager in self.managers:
            await manager.start()
        await self.scheduler.start()
        if self.health_server is not None:
            await self.health_server.start()
        logger.info("control_plane_started", jobs=len(self.scheduler.pending_jobs()))

    async def stop(self) -> None:
        """Stop everything in reverse order and close the store."""
        logger.info("stopping_control_plane")
        if self.health_server is not None:
            await self.health_server.stop()
        await self.scheduler.stop()
        for manager in reversed(self.managers):
            await manager.stop()

        for responder in self._responders:
            responder.detach()
        self._responders.clear()
        if self._heartbeat_subscription is not None:
            self.bus.unsubscribe(self._heartbeat_subscription)
            self._heartbeat_subscription = None

        await self.bus.shutdown()
        await self.store.close()
        self._initialized = False
        self._stop_event.set()
        logger.info("control_plane_stopped")

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run_forever(self) -> None:
        """Start, wait until ``request_stop`` is called, then stop."""
        self._stop_event.clear()
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    async def health(self) -> Dict[str, Any]:
        """Health snapshot plus each manager's own health check."""
        snapshot = await self.reporter.snapshot()
        snapshot["managers"] = {
            manager.name: (await manager.health_check()).to_dict()
            for manager in self.managers
        }
        return snapshot

    def apply_config(self, config: OverwatchConfig) -> None:
        """
        Apply a reloaded configuration to the running components.

        Thresholds take effect on the next cycle and a changed interval
        re-registers that manager's periodic jobs. Registry, database and
        self-healing enablement changes need a restart.
        """
        self.registry.validate(config.watchdog.critical_agent_types)
        self.workload.set_thresholds(config.workload.high_threshold, config.workload.critical_threshold)
        self.workload.spawn_task_cap = config.workload.spawn_task_cap
        self.tasks.max_retries = config.task_queue.max_retries

        self.failures.failure_penalty = config.failure_handler.failure_penalty
        self.failures.restart_bonus = config.failure_handler.restart_bonus
        self.failures.recovery_delay = config.failure_handler.recovery_delay

        self.mutual.min_health_score = config.mutual_monitoring.min_health_score
        self.mutual.heartbeat_timeout = config.mutual_monitoring.heartbeat_timeout
        self.mutual.auto_pair = config.mutual_monitoring.auto_pair
        self.mutual.record_failures = config.mutual_monitoring.record_failures

        self.watchdog.heartbeat_timeout = config.watchdog.heartbeat_timeout
        self.watchdog.ping_timeout = config.watchdog.ping_timeout
        self.watchdog.min_health_score = config.watchdog.min_health_score
        self.watchdog.set_critical_types(config.watchdog.critical_agent_types)

        self.orchestrator.content_threshold = config.orchestrator.content_threshold
        self.orchestrator.decompose_types = set(config.orchestrator.decompose_types)

        intervals = [
            (self.workload, "check_interval", config.workload.check_interval),
            (self.mutual, "check_interval", config.mutual_monitoring.check_interval),
            (self.watchdog, "check_interval", config.watchdog.check_interval),
            (self.orchestrator, "dispatch_interval", config.orchestrator.dispatch_interval),
        ]
        if self.self_healing:
            intervals.append(
                (self.self_healing, "monitoring_interval", config.self_healing.monitoring_interval)
            )
        for manager, attribute, interval in intervals:
            if getattr(manager, attribute) != interval:
                setattr(manager, attribute, interval)
                manager.reschedule()

        if config.registry != self.config.registry or config.database != self.config.database:
            logger.warning("config_change_requires_restart", sections=["registry", "database"])

        self.config = config
        logger.info("configuration_applied")

    async def _register_root_agent(self, agent_type: AgentType) -> str:
        existing = await self.agents.list_agents(
            agent_type=agent_type,
            statuses=(AgentStatus.IDLE, AgentStatus.BUSY)
        )
        roots = [agent for agent in existing if agent.parent_id is None]
        if roots:
            await self.agents.record_heartbeat(roots[-1].id)
            return roots[-1].id
        return await self.agents.spawn_child_agent(None, agent_type)

    async def _on_heartbeat(self, message: AgentMessage) -> None:
        agent_id = message.payload.get("agent_id") or message.sender
        await self.agents.record_heartbeat(agent_id)

    async def __aenter__(self) -> 'ControlPlane':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()


__all__ = [
    'ControlPlane',
]
