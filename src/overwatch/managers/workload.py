"""
Workload Monitor for Overwatch.

Periodically measures how full each agent is and relieves overloaded agents
by handing their queued work to peers or to a freshly spawned sibling.
"""

from typing import Any, Dict, List, Optional

from .agent import AgentManager
from .base import BaseManager
from .task_queue import TaskQueue
from ..models.agent import Agent, AgentStatus
from ..models.task import TaskFilter, TaskStatus
from ..storage.store import OrchestrationStore
from ..utils.clock import Clock
from ..utils.errors import AgentCapacityError, ValidationError
from ..utils.logging import get_logger
from ..utils.message_bus import MessageBus
from ..utils.metrics import MetricsCollector
from ..utils.scheduler import Scheduler


logger = get_logger("overwatch.workload")


class WorkloadMonitor(BaseManager):
    """Scheduled workload checks and delegation."""

    def __init__(
        self,
        store: OrchestrationStore,
        scheduler: Scheduler,
        bus: MessageBus,
        agents: AgentManager,
        tasks: TaskQueue,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        check_interval: float = 30.0,
        high_threshold: float = 75.0,
        critical_threshold: float = 90.0,
        spawn_task_cap: int = 3
    ):
        super().__init__("workload", store, scheduler, bus, clock, metrics)
        self.agents = agents
        self.tasks = tasks
        self.check_interval = check_interval
        self.spawn_task_cap = spawn_task_cap
        self.high_threshold = high_threshold
        self.critical_threshold = critical_threshold
        self.set_thresholds(high_threshold, critical_threshold)

    async def _initialize(self) -> None:
        pass

    async def _start(self) -> None:
        pass

    def _schedule_jobs(self) -> None:
        self._every(self.check_interval, self.check_workloads, name="workload_check")

    async def _stop(self) -> None:
        pass

    async def _health_check(self) -> Dict[str, Any]:
        return await self.get_workload_stats()

    def set_thresholds(self, high: float, critical: float) -> None:
        """Set the high/critical percentages, clamped to [0, 100]."""
        high = max(0.0, min(100.0, float(high)))
        critical = max(0.0, min(100.0, float(critical)))
        if high >= critical:
            raise ValidationError("high_threshold", high, f"must be below critical threshold {critical}")
        self.high_threshold = high
        self.critical_threshold = critical
        logger.info("workload_thresholds_set", high=high, critical=critical)

    async def check_workloads(self) -> None:
        """One pass over every working agent."""
        agents = await self.agents.list_agents(statuses=(AgentStatus.IDLE, AgentStatus.BUSY))
        for agent in agents:
            percentage = agent.workload_percentage
            self.metrics.gauge("agent.workload_percentage", percentage, tags={"agent_id": agent.id})

            if percentage >= self.critical_threshold:
                logger.warning(
                    "agent_workload_critical",
                    agent_id=agent.id,
                    agent_type=agent.agent_type.value,
                    workload_percentage=round(percentage, 2)
                )
                await self.handle_critical_workload(agent)
            elif percentage >= self.high_threshold:
                logger.info(
                    "agent_workload_high",
                    agent_id=agent.id,
                    agent_type=agent.agent_type.value,
                    workload_percentage=round(percentage, 2)
                )

    async def handle_critical_workload(self, agent: Agent) -> List[str]:
        """
        Move an overloaded agent's queued tasks elsewhere.

        Returns:
            Ids of the tasks that were delegated
        """
        pending = await self.tasks.get_tasks(TaskFilter(
            status=TaskStatus.PENDING,
            assigned_agent_id=agent.id
        ))
        if not pending:
            logger.debug("no_pending_tasks_to_delegate", agent_id=agent.id)
            return []

        peers = await self.agents.find_peers(agent.id)
        if not peers:
            if agent.parent_id is None:
                logger.warning(
                    "delegation_not_possible",
                    agent_id=agent.id,
                    reason="no peers and no parent",
                    pending_tasks=len(pending)
                )
                return []

            new_agent_id = await self.spawn_delegate(agent.parent_id, agent.agent_type)
            delegated = []
            for task in pending[:self.spawn_task_cap]:
                if await self._try_assign(task.id, new_agent_id):
                    delegated.append(task.id)
            logger.info(
                "workload_delegated_to_new_agent",
                agent_id=agent.id,
                new_agent_id=new_agent_id,
                tasks=len(delegated)
            )
            return delegated

        delegated = []
        for index, task in enumerate(pending):
            peer = peers[index % len(peers)]
            if await self._try_assign(task.id, peer.id):
                delegated.append(task.id)
        logger.info(
            "workload_delegated_to_peers",
            agent_id=agent.id,
            peers=[p.id for p in peers],
            tasks=len(delegated)
        )
        return delegated

    async def spawn_delegate(self, parent_id: Optional[str], agent_type: Any) -> str:
        """Spawn a helper agent of ``agent_type`` under ``parent_id``."""
        agent_id = await self.agents.spawn_child_agent(parent_id, agent_type)
        self.metrics.increment("workload.spawned_delegates")
        logger.info("delegate_spawned", agent_id=agent_id, parent_id=parent_id)
        return agent_id

    async def get_workload_stats(self) -> Dict[str, Any]:
        agents = await self.agents.list_agents(statuses=(AgentStatus.IDLE, AgentStatus.BUSY))
        percentages = [agent.workload_percentage for agent in agents]
        return {
            "total_agents": len(agents),
            "idle_agents": sum(1 for a in agents if a.status == AgentStatus.IDLE),
            "busy_agents": sum(1 for a in agents if a.status == AgentStatus.BUSY),
            "high_workload_agents": sum(
                1 for p in percentages if self.high_threshold <= p < self.critical_threshold
            ),
            "critical_workload_agents": sum(1 for p in percentages if p >= self.critical_threshold),
            "average_workload": round(sum(percentages) / len(percentages), 2) if percentages else 0.0,
            "total_capacity": sum(a.max_concurrent_tasks for a in agents),
            "total_used": sum(a.current_workload for a in agents),
            "thresholds": {"high": self.high_threshold, "critical": self.critical_threshold},
        }

    async def _try_assign(self, task_id: str, agent_id: str) -> bool:
        try:
            await self.tasks.assign_task(task_id, agent_id)
        except AgentCapacityError:
            logger.info("delegation_target_full", task_id=task_id, agent_id=agent_id)
            return False
        self.metrics.increment("workload.delegations")
        return True


__all__ = [
    'WorkloadMonitor',
]
