"""
Watchdog Service for Overwatch.

Watches the agents the control plane cannot live without. Each critical
type is checked by heartbeat age, health score and an active ``health_check``
ping over the message bus. The first type in the critical list is the most
critical one: when it fails an emergency is broadcast and, if it has a
parent, it is reset in place instead of waiting for normal recovery.
"""

from typing import Any, Dict, List, Optional

from ..managers.agent import AgentManager
from ..managers.base import BaseManager
from ..managers.failure_handler import FailureHandler
from ..models.agent import Agent, AgentStatus, AgentType
from ..models.failure import FailureType, RecoveryMethod
from ..storage.store import OrchestrationStore
from ..utils.clock import Clock, to_iso
from ..utils.logging import get_logger
from ..utils.message_bus import AgentMessage, MessageBus, Subscription
from ..utils.metrics import MetricsCollector
from ..utils.scheduler import Scheduler


logger = get_logger("overwatch.watchdog")

SENDER = "watchdog"
PING_TYPE = "health_check"

DEFAULT_CRITICAL_TYPES = (AgentType.SELF_HEALING, AgentType.ORCHESTRATOR)


class HeartbeatResponder:
    """
    Answers ``health_check`` pings on behalf of an in-process agent.

    Every answered ping also refreshes the agent's heartbeat.
    """

    def __init__(self, agent_id: str, bus: MessageBus, agents: AgentManager):
        self.agent_id = agent_id
        self.bus = bus
        self.agents = agents
        self._subscription: Optional[Subscription] = None

    def attach(self) -> 'HeartbeatResponder':
        if self._subscription is None:
            self._subscription = self.bus.subscribe(self.agent_id, self._on_message)
        return self

    def detach(self) -> None:
        if self._subscription is not None:
            self.bus.unsubscribe(self._subscription)
            self._subscription = None

    async def _on_message(self, message: AgentMessage) -> None:
        if message.type != PING_TYPE or message.recipient != self.agent_id:
            return
        await self.agents.record_heartbeat(self.agent_id)
        self.bus.respond(message, self.agent_id, {"status": "ok", "agent_id": self.agent_id})


class WatchdogService(BaseManager):
    """Liveness checks for critical agent types."""

    def __init__(
        self,
        store: OrchestrationStore,
        scheduler: Scheduler,
        bus: MessageBus,
        agents: AgentManager,
        failures: FailureHandler,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        critical_types: Optional[List[Any]] = None,
        check_interval: float = 30.0,
        heartbeat_timeout: float = 60.0,
        ping_timeout: float = 2.0,
        min_health_score: int = 30,
        parent_reset_health: int = 50
    ):
        super().__init__("watchdog", store, scheduler, bus, clock, metrics)
        self.agents = agents
        self.failures = failures
        self.critical_types: List[AgentType] = [
            AgentType.parse(t) for t in (critical_types or DEFAULT_CRITICAL_TYPES)
        ]
        self.check_interval = check_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.ping_timeout = ping_timeout
        self.min_health_score = min_health_score
        self.parent_reset_health = parent_reset_health

    @property
    def most_critical_type(self) -> Optional[AgentType]:
        return self.critical_types[0] if self.critical_types else None

    async def _initialize(self) -> None:
        logger.info("watchdog_critical_types", types=[t.value for t in self.critical_types])

    async def _start(self) -> None:
        pass

    def _schedule_jobs(self) -> None:
        self._every(self.check_interval, self.check_critical_agents, name="watchdog_check")

    async def _stop(self) -> None:
        pass

    async def _health_check(self) -> Dict[str, Any]:
        return {"critical_types": [t.value for t in self.critical_types]}

    def register_critical_type(self, agent_type: Any) -> None:
        """Add a type to the end of the critical list."""
        parsed = AgentType.parse(agent_type)
        if parsed not in self.critical_types:
            self.critical_types.append(parsed)
            logger.info("critical_type_registered", agent_type=parsed.value)

    def set_critical_types(self, agent_types: List[Any]) -> None:
        """Replace the critical list; the first entry becomes the most critical."""
        parsed: List[AgentType] = []
        for agent_type in agent_types:
            value = AgentType.parse(agent_type)
            if value not in parsed:
                parsed.append(value)
        self.critical_types = parsed
        logger.info("critical_types_updated", types=[t.value for t in parsed])

    async def check_critical_agents(self) -> Dict[str, bool]:
        """
        Check the newest live agent of every critical type.

        Returns:
            Mapping of checked agent id to whether it was responsive
        """
        results: Dict[str, bool] = {}
        for agent_type in list(self.critical_types):
            agent = await self._current_agent(agent_type)
            if agent is None:
                logger.debug("no_live_agent_for_critical_type", agent_type=agent_type.value)
                continue

            reason = await self.probe(agent)
            results[agent.id] = reason is None
            if reason is None:
                await self.agents.record_heartbeat(agent.id)
            else:
                await self.handle_unresponsive(agent, reason)

        return results

    async def probe(self, agent: Agent) -> Optional[str]:
        """Return why ``agent`` is unresponsive, or None when it answered."""
        age = agent.heartbeat_age(self.clock.now())
        if age is None or age > self.heartbeat_timeout:
            return f"heartbeat stale ({age:.0f}s)" if age is not None else "no heartbeat recorded"
        if agent.health_score < self.min_health_score:
            return f"health score {agent.health_score} below {self.min_health_score}"

        reply = await self.bus.request_response(
            SENDER,
            agent.id,
            PING_TYPE,
            {"timestamp": to_iso(self.clock.now())},
            timeout=self.ping_timeout
        )
        if reply is None:
            return f"no {PING_TYPE} reply within {self.ping_timeout}s"
        return None

    async def handle_unresponsive(self, agent: Agent, reason: str) -> str:
        """Record the failure and, for the most critical type, escalate."""
        self.metrics.increment("watchdog.unresponsive", tags={"type": agent.agent_type.value})
        logger.error(
            "critical_agent_unresponsive",
            agent_id=agent.id,
            agent_type=agent.agent_type.value,
            reason=reason
        )

        if agent.agent_type != self.most_critical_type:
            return await self.failures.record_failure(
                agent.id,
                FailureType.UNRESPONSIVE,
                reason=reason,
                detected_by=SENDER
            )

        failure_id = await self.failures.record_failure(
            agent.id,
            FailureType.UNRESPONSIVE,
            reason=reason,
            detected_by=SENDER,
            auto_recover=False
        )
        self.bus.broadcast(SENDER, "emergency", {
            "type": f"{agent.agent_type.value}-failure",
            "agent_id": agent.id,
            "failure_id": failure_id,
            "reason": reason,
            "timestamp": to_iso(self.clock.now()),
        })

        if agent.parent_id:
            await self.agents.reset_agent(agent.id, health=self.parent_reset_health)
            await self.failures.mark_recovered(failure_id, RecoveryMethod.WATCHDOG)
            logger.info("critical_agent_reset_by_watchdog", agent_id=agent.id, parent_id=agent.parent_id)
        else:
            logger.critical(
                "manual_intervention_required",
                agent_id=agent.id,
                agent_type=agent.agent_type.value,
                reason="critical root agent is unresponsive"
            )
        return failure_id

    async def _current_agent(self, agent_type: AgentType) -> Optional[Agent]:
        candidates = await self.agents.list_agents(
            agent_type=agent_type,
            statuses=(AgentStatus.IDLE, AgentStatus.BUSY, AgentStatus.ERROR)
        )
        return candidates[-1] if candidates else None


__all__ = [
    'HeartbeatResponder',
    'WatchdogService',
    'PING_TYPE',
]
