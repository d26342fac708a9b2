"""
Orchestrator for Overwatch.

This module turns inbound messages into delegated work with:
- Intent routing to an agent type and capability set
- Decomposition of complex, multi-step, batch and oversized messages
- Delegation to available agents, spawning helpers when none are free
- A scheduled dispatch cycle for tasks left pending
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from ..managers.agent import AgentManager
from ..managers.base import BaseManager
from ..managers.task_queue import TaskQueue
from ..managers.workload import WorkloadMonitor
from ..models.agent import AgentStatus, AgentType
from ..models.task import TaskFilter, TaskPriority, TaskStatus
from ..storage.store import OrchestrationStore
from ..utils.clock import Clock
from ..utils.errors import AgentCapacityError, OverwatchError, TaskNotFoundError
from ..utils.logging import get_logger, log_function_call
from ..utils.message_bus import MessageBus
from ..utils.metrics import MetricsCollector
from ..utils.scheduler import Scheduler


logger = get_logger("overwatch.orchestrator")

DEFAULT_DECOMPOSE_TYPES = ("complex_query", "multi_step", "batch_operation")


@dataclass(frozen=True)
class Route:
    agent_type: AgentType
    capabilities: FrozenSet[str]


ROUTES: Dict[str, Route] = {
    "conversation": Route(AgentType.DIALOGUE, frozenset({"dialogue"})),
    "search": Route(AgentType.WEB, frozenset({"web_search"})),
    "music": Route(AgentType.SPOTIFY, frozenset({"music_control"})),
}
DEFAULT_ROUTE = ROUTES["conversation"]


@dataclass
class RouteResult:
    """Outcome of routing one message or task."""
    agent: str
    status: str
    task_id: str
    agent_id: Optional[str] = None
    subtask_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "status": self.status,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "subtask_ids": list(self.subtask_ids),
        }


def route_for(task_type: str) -> Route:
    return ROUTES.get(task_type, DEFAULT_ROUTE)


def chunk_content(content: str, limit: int) -> List[str]:
    """Split text at whitespace into chunks of at most ``limit`` characters."""
    chunks: List[str] = []
    current = ""
    for word in content.split():
        while len(word) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(word[:limit])
            word = word[limit:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) > limit:
            chunks.append(current)
            current = word
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class Orchestrator(BaseManager):
    """Routes messages to agents, decomposing them when needed."""

    def __init__(
        self,
        store: OrchestrationStore,
        scheduler: Scheduler,
        bus: MessageBus,
        agents: AgentManager,
        tasks: TaskQueue,
        workload: WorkloadMonitor,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        decompose_types: Optional[List[str]] = None,
        content_threshold: int = 1000,
        dispatch_interval: float = 10.0,
        dispatch_batch_size: int = 50
    ):
        super().__init__("orchestrator", store, scheduler, bus, clock, metrics)
        self.agents = agents
        self.tasks = tasks
        self.workload = workload
        self.decompose_types = set(decompose_types or DEFAULT_DECOMPOSE_TYPES)
        self.content_threshold = content_threshold
        self.dispatch_interval = dispatch_interval
        self.dispatch_batch_size = dispatch_batch_size
        self.agent_id: Optional[str] = None

    async def _initialize(self) -> None:
        existing = await self.agents.list_agents(
            parent_id=None,
            agent_type=AgentType.ORCHESTRATOR,
            statuses=(AgentStatus.IDLE, AgentStatus.BUSY)
        )
        roots = [agent for agent in existing if agent.parent_id is None]
        if roots:
            self.agent_id = roots[-1].id
            await self.agents.record_heartbeat(self.agent_id)
        else:
            self.agent_id = await self.agents.spawn_child_agent(None, AgentType.ORCHESTRATOR)
        logger.info("orchestrator_registered", agent_id=self.agent_id, reused=bool(roots))

    async def _start(self) -> None:
        pass

    def _schedule_jobs(self) -> None:
        self._every(self.dispatch_interval, self.dispatch_pending, name="dispatch_pending")

    async def _stop(self) -> None:
        pass

    async def _health_check(self) -> Dict[str, Any]:
        pending = await self.tasks.get_tasks(TaskFilter(status=TaskStatus.PENDING))
        return {"agent_id": self.agent_id, "pending_tasks": len(pending)}

    def should_decompose(self, message: Mapping[str, Any]) -> bool:
        content = str(message.get("content") or "")
        return message.get("type") in self.decompose_types or len(content) > self.content_threshold

    def plan_subtasks(self, message: Mapping[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
        """Work out (type, payload) for each subtask of ``message``."""
        message_type = message.get("type") or "conversation"
        content = str(message.get("content") or "")

        if message_type == "complex_query":
            return [
                ("conversation", {"content": content}),
                ("search", {"content": content}),
            ]

        if message_type == "multi_step":
            steps = message.get("steps") or []
            if steps:
                return [
                    (step.get("type") or "conversation", {"content": str(step.get("content") or "")})
                    for step in steps
                ]
            return [
                ("conversation", {"content": line.strip()})
                for line in content.splitlines() if line.strip()
            ]

        if message_type == "batch_operation":
            operation = message.get("operation") or "conversation"
            return [
                (operation, {"content": item if isinstance(item, str) else "", "item": item})
                for item in message.get("items") or []
            ]

        return [
            (message_type, {"content": chunk, "chunk_index": index})
            for index, chunk in enumerate(chunk_content(content, self.content_threshold))
        ]

    @log_function_call(logger)
    async def route_message(self, message: Mapping[str, Any]) -> RouteResult:
        """
        Route an inbound message.

        Args:
            message: Mapping with ``type`` and ``content``; ``steps``,
                ``items``, ``operation`` and ``priority`` are optional

        Returns:
            RouteResult for the created task (the parent when decomposed)

        Raises:
            ValidationError: If ``priority`` is not a known priority
        """
        self._require_ready()
        self.metrics.increment("orchestrator.messages")
        priority = TaskPriority.parse(message.get("priority"))

        if self.should_decompose(message):
            subtasks = self.plan_subtasks(message)
            if subtasks:
                return await self._route_decomposed(message, subtasks, priority)
            logger.info("decomposition_produced_no_subtasks", message_type=message.get("type"))

        message_type = message.get("type") or "conversation"
        payload = {"content": str(message.get("content") or "")}
        if message.get("metadata"):
            payload["metadata"] = dict(message["metadata"])

        task_id = await self.tasks.create_task(
            message_type,
            payload,
            priority=priority
        )
        return await self.delegate_task(task_id)

    async def delegate_task(self, task_id: str, preferred_agent_id: Optional[str] = None) -> RouteResult:
        """Assign a pending task to a capable agent, spawning one if needed."""
        task = await self.tasks.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        route = route_for(task.type)

        if preferred_agent_id is not None:
            preferred = await self.agents.get_agent(preferred_agent_id)
            if preferred is not None and preferred.is_assignable and preferred.capabilities & route.capabilities:
                if await self._try_assign(task_id, preferred_agent_id):
                    return self._delegated(route, task_id, preferred_agent_id)

        for candidate in await self.agents.find_available_agents(route.capabilities):
            if await self._try_assign(task_id, candidate.id):
                return self._delegated(route, task_id, candidate.id)

        try:
            agent_id = await self.workload.spawn_delegate(self.agent_id, route.agent_type)
            await self.tasks.assign_task(task_id, agent_id)
        except OverwatchError as e:
            self.metrics.increment("orchestrator.queued")
            logger.warning(
                "task_queued_no_agent",
                task_id=task_id,
                agent_type=route.agent_type.value,
                error=str(e)
            )
            return RouteResult(agent=route.agent_type.value, status="queued", task_id=task_id)

        return self._delegated(route, task_id, agent_id)

    async def dispatch_pending(self) -> int:
        """
        Try again to delegate tasks that are still pending.

        Returns:
            Number of tasks delegated
        """
        pending = await self.tasks.get_tasks(TaskFilter(
            status=TaskStatus.PENDING,
            limit=self.dispatch_batch_size
        ))
        delegated = 0
        for task in pending:
            if task.is_decomposed:
                continue
            result = await self.delegate_task(task.id, preferred_agent_id=task.assigned_agent_id)
            if result.status == "delegated":
                delegated += 1

        if pending:
            logger.info("dispatch_cycle_complete", pending=len(pending), delegated=delegated)
        return delegated

    async def _route_decomposed(
        self,
        message: Mapping[str, Any],
        subtasks: List[Tuple[str, Dict[str, Any]]],
        priority: TaskPriority
    ) -> RouteResult:
        message_type = message.get("type") or "conversation"
        parent_id = await self.tasks.create_task(
            message_type,
            {
                "content": str(message.get("content") or ""),
                "decomposed": True,
                "subtask_count": len(subtasks),
            },
            priority=TaskPriority.HIGH
        )

        subtask_ids = [
            await self.tasks.create_task(task_type, payload, priority=priority, parent_task_id=parent_id)
            for task_type, payload in subtasks
        ]
        await self.tasks.mark_parent_in_progress(parent_id)

        for subtask_id in subtask_ids:
            await self.delegate_task(subtask_id)

        self.metrics.increment("orchestrator.decomposed")
        logger.info(
            "message_decomposed",
            task_id=parent_id,
            message_type=message_type,
            subtasks=len(subtask_ids)
        )
        return RouteResult(
            agent=AgentType.ORCHESTRATOR.value,
            status="decomposed",
            task_id=parent_id,
            agent_id=self.agent_id,
            subtask_ids=subtask_ids,
        )

    async def _try_assign(self, task_id: str, agent_id: str) -> bool:
        try:
            await self.tasks.assign_task(task_id, agent_id)
        except AgentCapacityError:
            logger.debug("assignment_race_lost", task_id=task_id, agent_id=agent_id)
            return False
        return True

    def _delegated(self, route: Route, task_id: str, agent_id: str) -> RouteResult:
        self.metrics.increment("orchestrator.delegated", tags={"agent_type": route.agent_type.value})
        logger.info("task_delegated", task_id=task_id, agent_id=agent_id, agent_type=route.agent_type.value)
        return RouteResult(agent=route.agent_type.value, status="delegated", task_id=task_id, agent_id=agent_id)


__all__ = [
    'Orchestrator',
    'RouteResult',
    'Route',
    'ROUTES',
    'chunk_content',
    'route_for',
]
