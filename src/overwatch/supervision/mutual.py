"""
Mutual Monitoring Service for Overwatch.

Agents of the same type watch each other. A periodic check finds watched
agents that look unhealthy, notifies their monitors over the message bus
and records a failure so the Failure Handler can recover them.
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from ..managers.agent import AgentManager
from ..managers.base import BaseManager
from ..managers.failure_handler import FailureHandler
from ..models.agent import Agent, AgentStatus
from ..models.failure import FailureType
from ..storage.store import OrchestrationStore
from ..utils.clock import Clock, to_iso
from ..utils.errors import AgentNotFoundError, ValidationError
from ..utils.logging import get_logger
from ..utils.message_bus import MessageBus
from ..utils.metrics import MetricsCollector
from ..utils.scheduler import Scheduler


logger = get_logger("overwatch.mutual_monitoring")

SENDER = "mutual-monitoring-service"
DETECTED_BY = "mutual-monitoring"


class MutualMonitoringService(BaseManager):
    """Peer-to-peer health watching between agents."""

    def __init__(
        self,
        store: OrchestrationStore,
        scheduler: Scheduler,
        bus: MessageBus,
        agents: AgentManager,
        failures: FailureHandler,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        check_interval: float = 30.0,
        min_health_score: int = 30,
        heartbeat_timeout: float = 120.0,
        auto_pair: bool = True,
        record_failures: bool = True
    ):
        super().__init__("mutual_monitoring", store, scheduler, bus, clock, metrics)
        self.agents = agents
        self.failures = failures
        self.check_interval = check_interval
        self.min_health_score = min_health_score
        self.heartbeat_timeout = heartbeat_timeout
        self.auto_pair = auto_pair
        self.record_failures = record_failures

    async def _initialize(self) -> None:
        pass

    async def _start(self) -> None:
        pass

    def _schedule_jobs(self) -> None:
        self._every(self.check_interval, self._tick, name="mutual_monitoring_check")

    async def _stop(self) -> None:
        pass

    async def _health_check(self) -> Dict[str, Any]:
        pairs = await self.get_monitoring_pairs()
        return {"monitoring_links": len(pairs)}

    async def setup_mutual_monitoring(self, agent_a: str, agent_b: str) -> None:
        """Make two agents monitor each other. Repeating the call changes nothing."""
        if agent_a == agent_b:
            raise ValidationError("agent_b", agent_b, "an agent cannot monitor itself")
        for agent_id in (agent_a, agent_b):
            if await self.agents.get_agent(agent_id) is None:
                raise AgentNotFoundError(agent_id)

        now = self.clock.now()
        added = await self.store.add_monitor_link(agent_a, agent_b, now)
        added += await self.store.add_monitor_link(agent_b, agent_a, now)
        if added:
            logger.info("mutual_monitoring_established", agent_a=agent_a, agent_b=agent_b)

    async def remove_mutual_monitoring(self, agent_a: str, agent_b: str) -> None:
        removed = await self.store.remove_monitor_link(agent_a, agent_b)
        removed += await self.store.remove_monitor_link(agent_b, agent_a)
        if removed:
            logger.info("mutual_monitoring_removed", agent_a=agent_a, agent_b=agent_b)

    async def get_monitoring_pairs(self) -> List[Tuple[str, str]]:
        """Directed (monitor, monitored) links."""
        return await self.store.list_monitor_links()

    async def auto_setup_monitoring(self) -> int:
        """
        Chain live agents of each type so each watches the next.

        Returns:
            Number of pairs linked
        """
        live = await self.agents.list_agents(
            statuses=(AgentStatus.IDLE, AgentStatus.BUSY, AgentStatus.ERROR)
        )
        by_type: Dict[str, List[Agent]] = defaultdict(list)
        for agent in live:
            by_type[agent.agent_type.value].append(agent)

        pairs = 0
        for group in by_type.values():
            for first, second in zip(group, group[1:]):
                await self.setup_mutual_monitoring(first.id, second.id)
                pairs += 1
        return pairs

    def assess(self, agent: Agent) -> Optional[str]:
        """Return why ``agent`` is unhealthy, or None when it is fine."""
        if agent.status in (AgentStatus.ERROR, AgentStatus.STOPPED):
            return f"status is {agent.status.value}"
        if agent.health_score < self.min_health_score:
            return f"health score {agent.health_score} below {self.min_health_score}"
        age = agent.heartbeat_age(self.clock.now())
        if age is None or age > self.heartbeat_timeout:
            return "heartbeat stale" if age is not None else "no heartbeat recorded"
        return None

    async def check_monitored_agents(self) -> List[str]:
        """
        Check every agent that has at least one monitor.

        Returns:
            Ids of the agents found unhealthy
        """
        links = await self.store.list_monitor_links()
        monitors_of: Dict[str, List[str]] = defaultdict(list)
        for monitor_id, monitored_id in links:
            monitors_of[monitored_id].append(monitor_id)

        unhealthy: List[str] = []
        for monitored_id, monitor_ids in monitors_of.items():
            agent = await self.agents.get_agent(monitored_id)
            if agent is None or agent.status == AgentStatus.STOPPED:
                continue

            reason = self.assess(agent)
            if reason is None:
                continue

            unhealthy.append(agent.id)
            await self._notify_monitors(agent, monitor_ids, reason)

            if self.record_failures and agent.status != AgentStatus.ERROR:
                failure_type = FailureType.UNRESPONSIVE if "heartbeat" in reason else FailureType.ERROR
                await self.failures.record_failure(
                    agent.id,
                    failure_type,
                    reason=reason,
                    detected_by=DETECTED_BY
                )

        if unhealthy:
            logger.warning("monitored_agents_unhealthy", agents=unhealthy)
        return unhealthy

    async def _notify_monitors(self, agent: Agent, monitor_ids: List[str], reason: str) -> None:
        for monitor_id in monitor_ids:
            monitor = await self.agents.get_agent(monitor_id)
            if monitor is None or monitor.status == AgentStatus.STOPPED:
                continue
            self.bus.publish(SENDER, monitor_id, "agent_failure_detected", {
                "failed_agent_id": agent.id,
                "agent_type": agent.agent_type.value,
                "reason": reason,
                "timestamp": to_iso(self.clock.now()),
            })
            self.metrics.increment("mutual_monitoring.notifications")

    async def _tick(self) -> None:
        if self.auto_pair:
            await self.auto_setup_monitoring()
        await self.check_monitored_agents()


__all__ = [
    'MutualMonitoringService',
]
