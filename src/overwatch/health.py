"""
Read-only health and metrics reporting for Overwatch.

``HealthReporter`` gathers snapshots from the managers; ``HealthServer``
serves them over HTTP with aiohttp. Nothing here changes state.
"""

import os
from typing import Any, Dict, Optional

import psutil
from aiohttp import web

from .managers.agent import AgentManager
from .managers.failure_handler import FailureHandler
from .managers.task_queue import TaskQueue
from .managers.workload import WorkloadMonitor
from .supervision.self_healing import SelfHealingSupervisor
from .utils.clock import Clock, SystemClock, to_iso
from .utils.errors import AgentNotFoundError
from .utils.logging import get_logger
from .utils.metrics import MetricsCollector


logger = get_logger("overwatch.health")


class HealthReporter:
    """Aggregates health information from every component."""

    def __init__(
        self,
        agents: AgentManager,
        tasks: TaskQueue,
        workload: WorkloadMonitor,
        failures: FailureHandler,
        self_healing: Optional[SelfHealingSupervisor] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Clock] = None
    ):
        self.agents = agents
        self.tasks = tasks
        self.workload = workload
        self.failures = failures
        self.self_healing = self_healing
        self.metrics = metrics or MetricsCollector()
        self.clock = clock or SystemClock()

    async def agent_health(self, agent_id: str) -> Dict[str, Any]:
        return await self.agents.get_agent_health_metrics(agent_id)

    async def agents_overview(self) -> Dict[str, Any]:
        agents = await self.agents.list_agents()
        return {
            "total": len(agents),
            "agents": [agent.to_dict() for agent in agents],
        }

    async def failure_stats(self) -> Dict[str, Any]:
        return await self.failures.get_failure_stats()

    async def workload_stats(self) -> Dict[str, Any]:
        return await self.workload.get_workload_stats()

    async def task_stats(self) -> Dict[str, Any]:
        return await self.tasks.get_task_stats()

    def circuits(self) -> Dict[str, Any]:
        if self.self_healing is None:
            return {}
        return self.self_healing.get_health_status()

    def system(self) -> Dict[str, Any]:
        process = psutil.Process(os.getpid())
        try:
            memory = process.memory_info()
            return {
                "pid": process.pid,
                "rss_bytes": memory.rss,
                "vms_bytes": memory.vms,
                "cpu_percent": process.cpu_percent(interval=None),
                "threads": process.num_threads(),
            }
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            return {"pid": os.getpid(), "error": str(e)}

    async def snapshot(self) -> Dict[str, Any]:
        """Everything at once, as served by ``GET /health``."""
        failure_stats = await self.failure_stats()
        circuits = self.circuits()
        healthy = not any(c.get("requires_manual_intervention") for c in circuits.values())
        return {
            "status": "healthy" if healthy else "degraded",
            "timestamp": to_iso(self.clock.now()),
            "workload": await self.workload_stats(),
            "tasks": await self.task_stats(),
            "failures": failure_stats,
            "circuits": circuits,
            "metrics": self.metrics.get_metrics(),
            "system": self.system(),
        }


class HealthServer:
    """Read-only HTTP endpoints over a HealthReporter."""

    def __init__(self, reporter: HealthReporter, host: str = "127.0.0.1", port: int = 8765):
        self.reporter = reporter
        self.host = host
        self.port = port
        self.app = create_health_app(reporter)
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("health_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("health_server_stopped")


def create_health_app(reporter: HealthReporter) -> web.Application:
    """Build the aiohttp application serving the health routes."""

    async def health(request: web.Request) -> web.Response:
        return web.json_response(await reporter.snapshot())

    async def agents(request: web.Request) -> web.Response:
        return web.json_response(await reporter.agents_overview())

    async def agent(request: web.Request) -> web.Response:
        agent_id = request.match_info["agent_id"]
        try:
            return web.json_response(await reporter.agent_health(agent_id))
        except AgentNotFoundError as e:
            return web.json_response(e.to_dict(), status=404)

    async def failures(request: web.Request) -> web.Response:
        return web.json_response(await reporter.failure_stats())

    async def workload(request: web.Request) -> web.Response:
        return web.json_response(await reporter.workload_stats())

    async def tasks(request: web.Request) -> web.Response:
        return web.json_response(await reporter.task_stats())

    async def circuits(request: web.Request) -> web.Response:
        return web.json_response(reporter.circuits())

    app = web.Application()
    app.router.add_get("/health", health)
    app.router.add_get("/health/agents", agents)
    app.router.add_get("/health/agents/{agent_id}", agent)
    app.router.add_get("/health/failures", failures)
    app.router.add_get("/health/workload", workload)
    app.router.add_get("/health/tasks", tasks)
    app.router.add_get("/health/circuits", circuits)
    return app


__all__ = [
    'HealthReporter',
    'HealthServer',
    'create_health_app',
]
