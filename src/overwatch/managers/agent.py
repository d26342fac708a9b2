"""
Agent Manager for Overwatch.

This module manages logical agents with:
- Spawning agents from the injected capability registry
- Status, heartbeat and health score updates
- Capability-based discovery of available agents and peers
- Soft removal (agents are stopped, never deleted)
"""

from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from .base import BaseManager
from ..models.agent import Agent, AgentStatus, AgentType
from ..models.capabilities import CapabilityRegistry
from ..storage.store import OrchestrationStore
from ..utils.clock import Clock, to_iso
from ..utils.errors import AgentNotFoundError, InvalidAgentTransitionError
from ..utils.logging import get_logger
from ..utils.message_bus import MessageBus
from ..utils.metrics import MetricsCollector
from ..utils.scheduler import Scheduler


logger = get_logger("overwatch.agent")

SENDER = "agent-manager"

# agents below this score are never offered new work
MIN_ASSIGNABLE_HEALTH = 50


class AgentManager(BaseManager):
    """Creates, tracks and discovers agents."""

    def __init__(
        self,
        store: OrchestrationStore,
        scheduler: Scheduler,
        bus: MessageBus,
        registry: CapabilityRegistry,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        super().__init__("agent", store, scheduler, bus, clock, metrics)
        self.registry = registry

    async def _initialize(self) -> None:
        logger.info("initializing_agent_manager", agent_types=len(self.registry))

    async def _start(self) -> None:
        pass

    async def _stop(self) -> None:
        pass

    async def _health_check(self) -> Dict[str, Any]:
        agents = await self.store.list_agents()
        by_status: Dict[str, int] = {}
        for agent in agents:
            by_status[agent.status.value] = by_status.get(agent.status.value, 0) + 1
        return {"total_agents": len(agents), "by_status": by_status}

    async def spawn_child_agent(self, parent_id: Optional[str], agent_type: Any) -> str:
        """
        Create an idle agent of ``agent_type``.

        Args:
            parent_id: Supervising agent, or None for a root agent
            agent_type: AgentType or its string value

        Returns:
            The new agent id

        Raises:
            UnknownAgentTypeError: If the type is not registered
            AgentNotFoundError: If the parent does not exist
        """
        spec = self.registry.get_spec(agent_type)

        if parent_id is not None and await self.store.get_agent(parent_id) is None:
            raise AgentNotFoundError(parent_id)

        now = self.clock.now()
        agent = Agent(
            agent_type=spec.agent_type,
            capabilities=spec.capabilities,
            max_concurrent_tasks=spec.max_concurrent_tasks,
            parent_id=parent_id,
            status=AgentStatus.IDLE,
            last_heartbeat=now,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_agent(agent)

        self.metrics.increment("agents.spawned", tags={"type": spec.agent_type.value})
        logger.info(
            "agent_spawned",
            agent_id=agent.id,
            agent_type=spec.agent_type.value,
            parent_id=parent_id
        )
        self.bus.broadcast(SENDER, "agent_spawned", {
            "agent_id": agent.id,
            "agent_type": spec.agent_type.value,
            "parent_id": parent_id,
        })
        return agent.id

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return await self.store.get_agent(agent_id)

    async def require_agent(self, agent_id: str) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def list_agents(
        self,
        parent_id: Optional[str] = None,
        agent_type: Optional[Any] = None,
        statuses: Optional[Iterable[AgentStatus]] = None
    ) -> List[Agent]:
        type_value = AgentType.parse(agent_type).value if agent_type is not None else None
        return await self.store.list_agents(parent_id=parent_id, agent_type=type_value, statuses=statuses)

    async def update_agent_status(
        self,
        agent_id: str,
        status: AgentStatus,
        workload: Optional[int] = None
    ) -> None:
        """
        Write status and optionally workload, refreshing the heartbeat.

        Repeating the same update is harmless. Health is never changed here.

        Raises:
            AgentNotFoundError: Unknown agent
            InvalidAgentTransitionError: The agent is stopped
        """
        status = AgentStatus(status)
        changed = await self.store.set_agent_status(agent_id, status, self.clock.now(), workload=workload)
        if not changed:
            agent = await self.require_agent(agent_id)
            raise InvalidAgentTransitionError(
                f"Agent {agent_id} is {agent.status.value} and cannot become {status.value}"
            )
        logger.debug("agent_status_updated", agent_id=agent_id, status=status.value, workload=workload)

    async def update_health_score(self, agent_id: str, score: float) -> int:
        """Set an absolute health score, clamped to [0, 100]."""
        new_score = await self.store.set_health(agent_id, score, self.clock.now())
        if new_score is None:
            raise AgentNotFoundError(agent_id)
        logger.debug("agent_health_set", agent_id=agent_id, health_score=new_score)
        return new_score

    async def adjust_health_score(self, agent_id: str, delta: int) -> int:
        """Atomically add ``delta`` to the health score and return the clamped result."""
        new_score = await self.store.adjust_health(agent_id, delta, self.clock.now())
        if new_score is None:
            raise AgentNotFoundError(agent_id)
        logger.debug("agent_health_adjusted", agent_id=agent_id, delta=delta, health_score=new_score)
        return new_score

    async def record_heartbeat(self, agent_id: str) -> None:
        if not await self.store.touch_heartbeat(agent_id, self.clock.now()):
            await self.require_agent(agent_id)
            logger.debug("heartbeat_ignored_for_stopped_agent", agent_id=agent_id)

    async def reset_agent(self, agent_id: str, health: Optional[int] = None, health_delta: int = 0) -> None:
        """Return an agent to idle with no workload."""
        if not await self.store.reset_agent(agent_id, health, health_delta, self.clock.now()):
            agent = await self.require_agent(agent_id)
            raise InvalidAgentTransitionError(f"Agent {agent_id} is {agent.status.value} and cannot be reset")
        logger.info("agent_reset", agent_id=agent_id, health=health, health_delta=health_delta)

    async def find_available_agents(
        self,
        capabilities: Iterable[str],
        exclude: Optional[Iterable[str]] = None
    ) -> List[Agent]:
        """
        Find agents that can take work needing any of ``capabilities``.

        Results are ordered by workload (lowest first), then health (highest
        first). Agents at their concurrency limit are never returned.
        """
        candidates = await self.store.query_available_agents(
            capabilities,
            exclude=exclude or (),
            min_health=MIN_ASSIGNABLE_HEALTH
        )
        return [agent for agent in candidates if agent.is_assignable]

    async def find_peers(self, agent_id: str) -> List[Agent]:
        """Available agents with exactly the same capability set."""
        agent = await self.require_agent(agent_id)
        candidates = await self.find_available_agents(agent.capabilities, exclude=[agent_id])
        return [peer for peer in candidates if peer.capabilities == agent.capabilities]

    async def remove_agent(self, agent_id: str) -> None:
        """Stop an agent and drop its monitoring links."""
        await self.require_agent(agent_id)
        await self.store.set_agent_status(agent_id, AgentStatus.STOPPED, self.clock.now())
        await self.store.remove_links_for(agent_id)

        self.metrics.increment("agents.removed")
        self.metrics.remove_gauge("agent.workload_percentage", tags={"agent_id": agent_id})
        logger.info("agent_removed", agent_id=agent_id)
        self.bus.broadcast(SENDER, "agent_removed", {"agent_id": agent_id})

    async def get_agent_health_metrics(self, agent_id: str) -> Dict[str, Any]:
        agent = await self.require_agent(agent_id)
        since = self.clock.now() - timedelta(hours=24)
        unrecovered = await self.store.query_failures(agent_id=agent_id, since=since, recovered=False)
        return {
            "agent_id": agent.id,
            "agent_type": agent.agent_type.value,
            "health_score": agent.health_score,
            "status": agent.status.value,
            "current_workload": agent.current_workload,
            "max_concurrent_tasks": agent.max_concurrent_tasks,
            "last_heartbeat": to_iso(agent.last_heartbeat),
            "consecutive_failures": len(unrecovered),
        }


__all__ = [
    'AgentManager',
    'MIN_ASSIGNABLE_HEALTH',
]
