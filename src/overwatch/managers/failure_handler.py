"""
Child Failure Handler for Overwatch.

This module records agent failures and recovers from them with:
- Failure records with a snapshot of the affected tasks
- Health penalties applied atomically
- Recovery scheduled on the shared scheduler (restart or replace)
- Task reassignment to capable agents, falling back to retry
- Failure statistics
"""

import functools
from datetime import datetime
from typing import Any, Dict, List, Optional

from .agent import AgentManager
from .base import BaseManager
from .task_queue import TaskQueue
from ..models.agent import AgentStatus
from ..models.failure import AgentFailure, FailureType, RecoveryMethod
from ..models.task import TaskStatus
from ..storage.store import OrchestrationStore
from ..utils.clock import Clock, to_iso
from ..utils.errors import AgentCapacityError, OverwatchError
from ..utils.logging import get_logger, log_function_call
from ..utils.message_bus import MessageBus
from ..utils.metrics import MetricsCollector
from ..utils.scheduler import Scheduler


logger = get_logger("overwatch.failure_handler")

SENDER = "failure-handler"


class FailureHandler(BaseManager):
    """Records failures and drives restart/replace recovery."""

    def __init__(
        self,
        store: OrchestrationStore,
        scheduler: Scheduler,
        bus: MessageBus,
        agents: AgentManager,
        tasks: TaskQueue,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        failure_penalty: int = 20,
        restart_bonus: int = 10,
        recovery_delay: float = 0.0
    ):
        super().__init__("failure_handler", store, scheduler, bus, clock, metrics)
        self.agents = agents
        self.tasks = tasks
        self.failure_penalty = failure_penalty
        self.restart_bonus = restart_bonus
        self.recovery_delay = recovery_delay

    async def _initialize(self) -> None:
        pass

    async def _start(self) -> None:
        pass

    async def _stop(self) -> None:
        pass

    async def _health_check(self) -> Dict[str, Any]:
        return await self.get_failure_stats()

    async def record_failure(
        self,
        agent_id: str,
        failure_type: FailureType,
        reason: Optional[str] = None,
        detected_by: Optional[str] = None,
        auto_recover: bool = True
    ) -> str:
        """
        Record a failure for ``agent_id``.

        The agent moves to error and loses ``failure_penalty`` health points.
        When ``auto_recover`` is set a recovery attempt is scheduled; this
        method never waits for it.

        Returns:
            The failure id
        """
        agent = await self.agents.require_agent(agent_id)
        failure = AgentFailure(
            agent_id=agent_id,
            failure_type=FailureType(failure_type),
            parent_id=agent.parent_id,
            failure_reason=reason,
            detected_by=detected_by,
        )
        await self.store.record_failure(failure, self.failure_penalty, self.clock.now())

        self.metrics.increment("failures.recorded", tags={"type": failure.failure_type.value})
        logger.warning(
            "agent_failure_recorded",
            failure_id=failure.id,
            agent_id=agent_id,
            failure_type=failure.failure_type.value,
            reason=reason,
            detected_by=detected_by,
            tasks_affected=len(failure.tasks_affected)
        )
        self.bus.broadcast(SENDER, "agent_failure_recorded", {
            "failure_id": failure.id,
            "agent_id": agent_id,
            "failure_type": failure.failure_type.value,
            "detected_by": detected_by,
        })

        if auto_recover:
            self._later(
                self.recovery_delay,
                functools.partial(self.attempt_recovery, failure.id),
                name=f"recover_{failure.id}"
            )

        return failure.id

    @log_function_call(logger)
    async def attempt_recovery(self, failure_id: str) -> bool:
        """
        Recover from a recorded failure.

        The current state is checked first, because another detector may
        already have handled the agent.

        Returns:
            True when the failure ends up recovered
        """
        failure = await self.store.get_failure(failure_id)
        if failure is None:
            logger.warning("recovery_for_unknown_failure", failure_id=failure_id)
            return False
        if failure.recovered:
            logger.debug("failure_already_recovered", failure_id=failure_id)
            return True

        agent = await self.agents.get_agent(failure.agent_id)
        if agent is None or agent.status == AgentStatus.STOPPED:
            logger.info("recovery_skipped_agent_stopped", failure_id=failure_id, agent_id=failure.agent_id)
            return False

        strategy = failure.recovery_strategy
        if agent.status in (AgentStatus.IDLE, AgentStatus.BUSY):
            await self.mark_recovered(failure_id, strategy)
            logger.info("agent_already_recovered", failure_id=failure_id, agent_id=agent.id)
            return True

        try:
            if strategy == RecoveryMethod.REPLACE:
                replacement = await self.replace_agent(agent.id)
                if replacement is None:
                    logger.error(
                        "manual_intervention_required",
                        failure_id=failure_id,
                        agent_id=agent.id,
                        reason="agent has no parent to spawn a replacement under"
                    )
                    return False
            else:
                if not await self.restart_agent(agent.id):
                    return False
        except OverwatchError as e:
            self.metrics.increment("failures.recovery_errors")
            logger.error("recovery_failed", failure_id=failure_id, agent_id=agent.id, error=str(e))
            return False

        await self.mark_recovered(failure_id, strategy)
        return True

    async def mark_recovered(self, failure_id: str, method: RecoveryMethod) -> bool:
        changed = await self.store.mark_failure_recovered(failure_id, method, self.clock.now())
        if changed:
            self.metrics.increment("failures.recovered", tags={"method": method.value})
            logger.info("failure_recovered", failure_id=failure_id, method=method.value)
        return bool(changed)

    async def restart_agent(self, agent_id: str) -> bool:
        """Reassign the agent's tasks, then reset it to idle with a health bonus."""
        agent = await self.agents.require_agent(agent_id)
        if agent.status == AgentStatus.STOPPED:
            logger.info("restart_skipped_agent_stopped", agent_id=agent_id)
            return False

        await self.reassign_tasks(agent_id)
        await self.agents.reset_agent(agent_id, health_delta=self.restart_bonus)

        self.metrics.increment("agents.restarted")
        logger.info("agent_restarted", agent_id=agent_id)
        self.bus.broadcast(SENDER, "agent_restarted", {"agent_id": agent_id})
        return True

    async def replace_agent(self, agent_id: str) -> Optional[str]:
        """
        Replace an agent with a new sibling of the same type.

        Returns:
            The replacement's id, or None when the agent has no parent
        """
        agent = await self.agents.require_agent(agent_id)
        if agent.parent_id is None:
            return None

        await self.reassign_tasks(agent_id)
        replacement_id = await self.agents.spawn_child_agent(agent.parent_id, agent.agent_type)
        await self.agents.remove_agent(agent_id)

        self.metrics.increment("agents.replaced")
        logger.info("agent_replaced", agent_id=agent_id, replacement_id=replacement_id)
        self.bus.broadcast(SENDER, "agent_replaced", {
            "agent_id": agent_id,
            "replacement_id": replacement_id,
        })
        return replacement_id

    async def reassign_tasks(self, agent_id: str) -> Dict[str, Optional[str]]:
        """
        Hand the agent's assigned and in-progress tasks to other agents.

        Returns:
            Mapping of task id to its new agent id (None when retried instead)
        """
        agent = await self.agents.require_agent(agent_id)
        active = await self.tasks.get_agent_tasks(
            agent_id,
            statuses=[TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS]
        )

        moved: Dict[str, Optional[str]] = {}
        for task in active:
            candidates = await self.agents.find_available_agents(agent.capabilities, exclude=[agent_id])
            target = candidates[0].id if candidates else None

            if target is not None:
                try:
                    await self.tasks.assign_task(task.id, target)
                    moved[task.id] = target
                    continue
                except AgentCapacityError:
                    logger.info("reassign_target_full", task_id=task.id, agent_id=target)

            await self.tasks.retry_task(task.id)
            moved[task.id] = None

        if moved:
            logger.info(
                "tasks_reassigned",
                agent_id=agent_id,
                reassigned=sum(1 for v in moved.values() if v),
                retried=sum(1 for v in moved.values() if v is None)
            )
        return moved

    async def get_failure(self, failure_id: str) -> Optional[AgentFailure]:
        return await self.store.get_failure(failure_id)

    async def list_failures(
        self,
        agent_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        recovered: Optional[bool] = None
    ) -> List[AgentFailure]:
        return await self.store.query_failures(agent_id=agent_id, since=since, until=until, recovered=recovered)

    async def get_failure_stats(self, agent_id: Optional[str] = None) -> Dict[str, Any]:
        failures = await self.store.query_failures(agent_id=agent_id)

        by_type: Dict[str, int] = {}
        by_method: Dict[str, int] = {}
        durations: List[float] = []
        for failure in failures:
            by_type[failure.failure_type.value] = by_type.get(failure.failure_type.value, 0) + 1
            if failure.recovery_method:
                key = failure.recovery_method.value
                by_method[key] = by_method.get(key, 0) + 1
            if failure.recovery_seconds is not None:
                durations.append(failure.recovery_seconds)

        recovered = sum(1 for f in failures if f.recovered)
        return {
            "total_failures": len(failures),
            "recovered": recovered,
            "unrecovered": len(failures) - recovered,
            "by_type": by_type,
            "by_recovery_method": by_method,
            "average_recovery_time": round(sum(durations) / len(durations), 3) if durations else None,
            "latest_failure": to_iso(failures[0].created_at) if failures else None,
        }


__all__ = [
    'FailureHandler',
]
