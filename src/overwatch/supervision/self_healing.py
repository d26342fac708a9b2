"""
Self-Healing Supervisor for Overwatch.

This module supervises named external processes with:
- Periodic status checks through a ProcessManager
- A circuit breaker with restart budget and exponential backoff
- Restarts scheduled on the shared scheduler and re-checked before acting
- Self-monitoring of the supervisor's own heartbeat
- An optional HTTP health probe
- Emergency broadcasts when a process needs manual intervention
"""

import asyncio
import functools
from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp

from .circuit_breaker import FailureAction, FailureDecision, ProcessCircuitBreaker
from .process_manager import ProcessManager
from ..managers.base import BaseManager
from ..utils.clock import Clock, to_iso
from ..utils.errors import ProcessManagerError
from ..utils.logging import get_logger
from ..utils.message_bus import MessageBus
from ..utils.metrics import MetricsCollector
from ..utils.scheduler import Scheduler


logger = get_logger("overwatch.self_healing")

SENDER = "self-healing-agent"


class SelfHealingSupervisor(BaseManager):
    """Process-level supervision keyed by process name."""

    def __init__(
        self,
        scheduler: Scheduler,
        bus: MessageBus,
        process_manager: ProcessManager,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        breaker: Optional[ProcessCircuitBreaker] = None,
        monitoring_interval: float = 30.0,
        self_process_name: str = "self-healing-agent",
        heartbeat_multiplier: float = 3.0,
        health_url: Optional[str] = None,
        health_timeout: float = 5.0
    ):
        super().__init__("self_healing", None, scheduler, bus, clock, metrics)
        self.process_manager = process_manager
        self.breaker = breaker or ProcessCircuitBreaker()
        self.monitoring_interval = monitoring_interval
        self.self_process_name = self_process_name
        self.heartbeat_multiplier = heartbeat_multiplier
        self.health_url = health_url
        self.health_timeout = health_timeout
        self.last_self_heartbeat: datetime = self.clock.now()

    async def _initialize(self) -> None:
        self.last_self_heartbeat = self.clock.now()

    async def _start(self) -> None:
        self.last_self_heartbeat = self.clock.now()

    def _schedule_jobs(self) -> None:
        self._every(self.monitoring_interval, self.check_all_processes, name="process_check")
        self._every(self.monitoring_interval, self.check_self_heartbeat, name="self_heartbeat_check")
        if self.health_url:
            self._every(self.monitoring_interval, self.probe_health_endpoint, name="health_probe")

    async def _stop(self) -> None:
        pass

    async def _health_check(self) -> Dict[str, Any]:
        return {
            "last_self_heartbeat": to_iso(self.last_self_heartbeat),
            "circuits": self.get_health_status(),
        }

    async def check_all_processes(self) -> None:
        """One supervision pass over every process the manager reports."""
        try:
            processes = await self.process_manager.list()
        except ProcessManagerError as e:
            self.metrics.increment("self_healing.list_failures")
            logger.error("process_list_failed", error=str(e))
            return

        for process in processes:
            if process.is_failed:
                await self.handle_process_failure(process.name, process.status)
            elif process.is_online:
                self.record_agent_success(process.name, process.status)

        self.last_self_heartbeat = self.clock.now()
        logger.debug("process_check_complete", processes=len(processes))

    async def handle_process_failure(self, name: str, status: str) -> FailureDecision:
        """Feed a failure into the breaker and act on its decision."""
        now = self.clock.now()
        decision = self.breaker.record_failure(name, now, status)
        state = self.breaker.state(name)

        if decision.action == FailureAction.RESTART:
            self.metrics.increment("self_healing.process_failures", tags={"process": name})
            logger.warning(
                "process_failed",
                process=name,
                status=status,
                consecutive_failures=state.consecutive_failures,
                restart_count=state.restart_count,
                circuit_open=state.is_circuit_open,
                restart_in=decision.delay
            )
            if state.is_circuit_open:
                logger.error("circuit_opened", process=name, consecutive_failures=state.consecutive_failures)
            self._later(
                decision.delay,
                functools.partial(self._scheduled_restart, name),
                name=f"restart_{name}"
            )

        elif decision.action == FailureAction.EXHAUSTED:
            self.metrics.increment("self_healing.restart_budget_exhausted", tags={"process": name})
            logger.critical(
                "manual_intervention_required",
                process=name,
                restart_count=state.restart_count,
                max_restarts=self.breaker.max_restarts
            )
            self.bus.broadcast(SENDER, "emergency", {
                "type": "restart-budget-exhausted",
                "process": name,
                "status": status,
                "restart_count": state.restart_count,
                "timestamp": to_iso(now),
            })

        elif decision.action == FailureAction.SUPPRESSED:
            logger.debug("circuit_open_waiting", process=name)

        return decision

    async def restart_process(self, name: str) -> bool:
        """Restart ``name`` now, counting it against the restart budget."""
        state = self.breaker.begin_restart(name, self.clock.now())
        try:
            await self.process_manager.restart(name)
        except ProcessManagerError as e:
            self.breaker.restart_failed(name)
            self.metrics.increment("self_healing.restart_failures", tags={"process": name})
            logger.error("process_restart_failed", process=name, restart_count=state.restart_count, error=str(e))
            return False

        self.breaker.restart_succeeded(name)
        self.metrics.increment("self_healing.restarts", tags={"process": name})
        logger.info("process_restarted", process=name, restart_count=state.restart_count)
        return True

    def record_agent_success(self, name: str, status: Optional[str] = None) -> None:
        self.breaker.record_success(name, status)

    async def check_self_heartbeat(self) -> bool:
        """
        Restart the supervisor's own process when its heartbeat is stale.

        Self-restarts share the restart budget of every other process. Once
        it is spent the breaker locks the supervisor's circuit and the
        restart is skipped.

        Returns:
            True if a self-restart was requested
        """
        now = self.clock.now()
        age = (now - self.last_self_heartbeat).total_seconds()
        limit = self.monitoring_interval * self.heartbeat_multiplier
        if age <= limit:
            return False

        state = self.breaker.state(self.self_process_name)
        if state.requires_manual_intervention or self.breaker.budget_exhausted(state, now):
            await self.handle_process_failure(self.self_process_name, "heartbeat-stale")
            logger.critical("self_restart_skipped", seconds_since_heartbeat=age, reason="restart budget exhausted")
            self.last_self_heartbeat = now
            return False

        self.metrics.increment("self_healing.self_restarts")
        logger.critical("self_heartbeat_stale", seconds_since_heartbeat=age, limit=limit)
        await self.restart_process(self.self_process_name)
        self.last_self_heartbeat = now
        return True

    async def probe_health_endpoint(self) -> bool:
        """GET ``health_url`` and report whether it answered with 2xx."""
        if not self.health_url:
            return True

        timeout = aiohttp.ClientTimeout(total=self.health_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.health_url) as response:
                    if 200 <= response.status < 300:
                        return True
                    self.metrics.increment("self_healing.probe_failures")
                    logger.warning("health_endpoint_not_ok", url=self.health_url, status=response.status)
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.metrics.increment("self_healing.probe_failures")
            logger.error("health_endpoint_unreachable", url=self.health_url, error=str(e) or type(e).__name__)
            return False

    def get_health_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: state.to_dict() for name, state in self.breaker.states().items()}

    def reset_circuit(self, name: str) -> None:
        self.breaker.reset(name)
        logger.info("circuit_reset", process=name)

    async def _scheduled_restart(self, name: str) -> None:
        state = self.breaker.state(name)
        if state.requires_manual_intervention or self.breaker.budget_exhausted(state, self.clock.now()):
            logger.info("scheduled_restart_skipped", process=name, reason="restart budget exhausted")
            return

        try:
            processes = await self.process_manager.list()
        except ProcessManagerError as e:
            logger.warning("restart_precheck_failed", process=name, error=str(e))
            processes = []

        if any(p.name == name and p.is_online for p in processes):
            logger.info("scheduled_restart_skipped", process=name, reason="process already online")
            return

        await self.restart_process(name)


__all__ = [
    'SelfHealingSupervisor',
]
