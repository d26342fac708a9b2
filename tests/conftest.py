"""
Pytest configuration and shared fixtures for Overwatch tests.
"""

from pathlib import Path
from typing import AsyncGenerator, Dict, List

import pytest

from overwatch.managers.agent import AgentManager
from overwatch.managers.failure_handler import FailureHandler
from overwatch.managers.task_queue import TaskQueue
from overwatch.managers.workload import WorkloadMonitor
from overwatch.models.capabilities import CapabilityRegistry
from overwatch.orchestration.orchestrator import Orchestrator
from overwatch.storage.database import Database
from overwatch.storage.store import OrchestrationStore
from overwatch.supervision.circuit_breaker import ProcessCircuitBreaker
from overwatch.supervision.mutual import MutualMonitoringService
from overwatch.supervision.process_manager import ProcessInfo
from overwatch.supervision.self_healing import SelfHealingSupervisor
from overwatch.supervision.watchdog import WatchdogService
from overwatch.utils.clock import ManualClock
from overwatch.utils.errors import ProcessManagerError
from overwatch.utils.message_bus import AgentMessage, MessageBus
from overwatch.utils.metrics import MetricsCollector
from overwatch.utils.scheduler import Scheduler


# Small limits so capacity behaviour shows up after one or two tasks
TEST_REGISTRY = {
    "dialogue-agent": {"capabilities": ["dialogue", "llm"], "max_concurrent_tasks": 1},
    "web-agent": {"capabilities": ["web_search", "content_extraction"], "max_concurrent_tasks": 2},
}


class FakeProcessManager:
    """In-memory stand-in for pm2."""

    def __init__(self):
        self.processes: Dict[str, str] = {}
        self.restarts: List[str] = []
        self.fail_list = False
        self.fail_restart = False

    def set_status(self, name: str, status: str) -> None:
        self.processes[name] = status

    async def list(self) -> List[ProcessInfo]:
        if self.fail_list:
            raise ProcessManagerError("pm2 jlist failed")
        return [ProcessInfo(name, status) for name, status in self.processes.items()]

    async def restart(self, name: str) -> None:
        self.restarts.append(name)
        if self.fail_restart:
            raise ProcessManagerError(f"pm2 restart {name} failed")
        self.processes[name] = "online"


class MessageRecorder:
    """Collects messages delivered to a bus subscription."""

    def __init__(self):
        self.messages: List[AgentMessage] = []

    async def handle(self, message: AgentMessage) -> None:
        self.messages.append(message)

    def of_type(self, message_type: str) -> List[AgentMessage]:
        return [m for m in self.messages if m.type == message_type]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def registry() -> CapabilityRegistry:
    return CapabilityRegistry.from_config(TEST_REGISTRY)


@pytest.fixture
def scheduler(clock: ManualClock) -> Scheduler:
    return Scheduler(clock)


@pytest.fixture
async def bus() -> AsyncGenerator[MessageBus, None]:
    message_bus = MessageBus(default_timeout=1.0)
    yield message_bus
    await message_bus.shutdown()


@pytest.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    db = Database(tmp_path / "overwatch.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
async def store(database: Database) -> AsyncGenerator[OrchestrationStore, None]:
    orchestration_store = OrchestrationStore(database)
    await orchestration_store.initialize()
    yield orchestration_store


@pytest.fixture
async def agent_manager(store, scheduler, bus, registry, clock, metrics) -> AsyncGenerator[AgentManager, None]:
    manager = AgentManager(store, scheduler, bus, registry, clock=clock, metrics=metrics)
    await manager.initialize()
    yield manager
    await manager.stop()


@pytest.fixture
async def task_queue(store, scheduler, bus, clock, metrics) -> AsyncGenerator[TaskQueue, None]:
    queue = TaskQueue(store, scheduler, bus, clock=clock, metrics=metrics, max_retries=2)
    await queue.initialize()
    yield queue
    await queue.stop()


@pytest.fixture
async def workload_monitor(
    store, scheduler, bus, agent_manager, task_queue, clock, metrics
) -> AsyncGenerator[WorkloadMonitor, None]:
    monitor = WorkloadMonitor(store, scheduler, bus, agent_manager, task_queue, clock=clock, metrics=metrics)
    await monitor.initialize()
    yield monitor
    await monitor.stop()


@pytest.fixture
async def failure_handler(
    store, scheduler, bus, agent_manager, task_queue, clock, metrics
) -> AsyncGenerator[FailureHandler, None]:
    handler = FailureHandler(store, scheduler, bus, agent_manager, task_queue, clock=clock, metrics=metrics)
    await handler.initialize()
    yield handler
    await handler.stop()


@pytest.fixture
async def mutual_monitoring(
    store, scheduler, bus, agent_manager, failure_handler, clock, metrics
) -> AsyncGenerator[MutualMonitoringService, None]:
    service = MutualMonitoringService(
        store, scheduler, bus, agent_manager, failure_handler,
        clock=clock, metrics=metrics
    )
    await service.initialize()
    yield service
    await service.stop()


@pytest.fixture
async def watchdog(
    store, scheduler, bus, agent_manager, failure_handler, clock, metrics
) -> AsyncGenerator[WatchdogService, None]:
    service = WatchdogService(
        store, scheduler, bus, agent_manager, failure_handler,
        clock=clock, metrics=metrics, ping_timeout=0.2
    )
    await service.initialize()
    yield service
    await service.stop()


@pytest.fixture
async def orchestrator(
    store, scheduler, bus, agent_manager, task_queue, workload_monitor, clock, metrics
) -> AsyncGenerator[Orchestrator, None]:
    service = Orchestrator(
        store, scheduler, bus, agent_manager, task_queue, workload_monitor,
        clock=clock, metrics=metrics
    )
    await service.initialize()
    yield service
    await service.stop()


@pytest.fixture
def process_manager() -> FakeProcessManager:
    return FakeProcessManager()


@pytest.fixture
async def self_healing(scheduler, bus, process_manager, clock, metrics) -> AsyncGenerator[SelfHealingSupervisor, None]:
    supervisor = SelfHealingSupervisor(
        scheduler, bus, process_manager,
        clock=clock,
        metrics=metrics,
        breaker=ProcessCircuitBreaker(failure_threshold=3, reset_timeout=60, max_restarts=5),
        monitoring_interval=30
    )
    await supervisor.initialize()
    yield supervisor
    await supervisor.stop()


@pytest.fixture
def recorder() -> MessageRecorder:
    return MessageRecorder()
