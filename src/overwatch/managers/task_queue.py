"""
Task Queue for Overwatch.

This module manages delegated work with:
- Task creation, lookup and filtered queries
- Single active assignment per task with atomic workload accounting
- Completion, cancellation of task trees and parent roll-up
- Bounded retry with dead-lettering
"""

from typing import Any, Dict, List, Optional

from .base import BaseManager
from ..models.task import Task, TaskFilter, TaskPriority, TaskStatus
from ..storage.store import OrchestrationStore
from ..utils.clock import Clock, to_iso
from ..utils.errors import TaskNotFoundError
from ..utils.logging import get_logger
from ..utils.message_bus import MessageBus
from ..utils.metrics import MetricsCollector
from ..utils.scheduler import Scheduler


logger = get_logger("overwatch.task_queue")

SENDER = "task-queue"


class TaskQueue(BaseManager):
    """Durable queue of tasks and their assignments."""

    def __init__(
        self,
        store: OrchestrationStore,
        scheduler: Scheduler,
        bus: MessageBus,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        max_retries: Optional[int] = 5
    ):
        super().__init__("task_queue", store, scheduler, bus, clock, metrics)
        self.max_retries = max_retries

    async def _initialize(self) -> None:
        logger.info("initializing_task_queue", max_retries=self.max_retries)

    async def _start(self) -> None:
        pass

    async def _stop(self) -> None:
        pass

    async def _health_check(self) -> Dict[str, Any]:
        return await self.get_task_stats()

    async def create_task(
        self,
        task_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        parent_task_id: Optional[str] = None
    ) -> str:
        """
        Create a pending task.

        Args:
            task_type: Task type, e.g. ``conversation`` or ``search``
            payload: JSON-serializable task payload
            priority: Task priority
            parent_task_id: Parent task for subtasks

        Returns:
            The new task id

        Raises:
            TaskNotFoundError: If the parent task does not exist
        """
        if parent_task_id is not None and await self.store.get_task(parent_task_id) is None:
            raise TaskNotFoundError(parent_task_id)

        now = self.clock.now()
        task = Task(
            type=task_type,
            payload=dict(payload or {}),
            priority=TaskPriority(priority),
            parent_task_id=parent_task_id,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_task(task)

        self.metrics.increment("tasks.created", tags={"type": task_type})
        logger.info(
            "task_created",
            task_id=task.id,
            task_type=task_type,
            priority=task.priority.value,
            parent_task_id=parent_task_id
        )
        return task.id

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self.store.get_task(task_id)

    async def get_tasks(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        """Query tasks, highest priority first then oldest first."""
        return await self.store.query_tasks(task_filter or TaskFilter())

    async def get_subtasks(self, parent_task_id: str) -> List[Task]:
        return await self.store.query_tasks(TaskFilter(parent_task_id=parent_task_id))

    async def assign_task(self, task_id: str, agent_id: str) -> Task:
        """
        Assign a task to an agent.

        Raises:
            AgentCapacityError: If the agent is unavailable or full. Nothing
                is changed in that case.
        """
        task = await self.store.assign_task(task_id, agent_id, self.clock.now())
        self.metrics.increment("tasks.assigned")
        logger.info("task_assigned", task_id=task_id, agent_id=agent_id)
        return task

    async def start_task(self, task_id: str) -> Task:
        task = await self.store.transition_task(
            task_id,
            (TaskStatus.ASSIGNED,),
            TaskStatus.IN_PROGRESS,
            self.clock.now(),
            {"started_at": to_iso(self.clock.now())}
        )
        logger.info("task_started", task_id=task_id, agent_id=task.assigned_agent_id)
        return task

    async def mark_parent_in_progress(self, task_id: str) -> Task:
        """Move a decomposed parent straight to in_progress while its subtasks run."""
        task = await self.store.transition_task(
            task_id,
            (TaskStatus.PENDING,),
            TaskStatus.IN_PROGRESS,
            self.clock.now(),
            {"started_at": to_iso(self.clock.now())}
        )
        logger.debug("parent_task_in_progress", task_id=task_id)
        return task

    async def complete_task(
        self,
        task_id: str,
        success: bool,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ) -> Task:
        """Finish an active task, release its agent slot and roll up its parent."""
        target = TaskStatus.COMPLETED if success else TaskStatus.FAILED
        task = await self.store.finish_task(task_id, target, self.clock.now(), result=result, error=error)

        self.metrics.increment("tasks.completed" if success else "tasks.failed")
        logger.info(
            "task_finished",
            task_id=task_id,
            status=task.status.value,
            agent_id=task.assigned_agent_id,
            error=error
        )

        if task.parent_task_id:
            await self._finalize_parent(task.parent_task_id)
        return task

    async def cancel_task(self, task_id: str) -> List[str]:
        """Cancel a task and its non-terminal subtasks. Returns the cancelled ids."""
        task = await self.store.get_task(task_id)
        cancelled = await self.store.cancel_task_tree(task_id, self.clock.now())
        logger.info("task_cancelled", task_id=task_id, cancelled=len(cancelled))

        if task and task.parent_task_id:
            await self._finalize_parent(task.parent_task_id)
        return cancelled

    async def retry_task(self, task_id: str) -> Task:
        """
        Put a task back to pending, or dead-letter it when out of retries.

        The previous assignee is kept in ``assigned_agent_id`` so the next
        dispatch can prefer it.
        """
        task = await self.store.retry_task(task_id, self.max_retries, self.clock.now())

        if task.dead_lettered:
            self.metrics.increment("tasks.dead_lettered")
            logger.warning(
                "task_dead_lettered",
                task_id=task_id,
                retry_count=task.retry_count,
                max_retries=self.max_retries
            )
            self.bus.broadcast(SENDER, "task_dead_lettered", {
                "task_id": task.id,
                "type": task.type,
                "retry_count": task.retry_count,
                "error": task.error,
            })
            if task.parent_task_id:
                await self._finalize_parent(task.parent_task_id)
        else:
            self.metrics.increment("tasks.retried")
            logger.info("task_retried", task_id=task_id, retry_count=task.retry_count)

        return task

    async def get_next_pending_task(self) -> Optional[Task]:
        tasks = await self.store.query_tasks(TaskFilter(status=TaskStatus.PENDING, limit=1))
        return tasks[0] if tasks else None

    async def get_agent_tasks(self, agent_id: str, statuses: Optional[List[TaskStatus]] = None) -> List[Task]:
        return await self.store.query_tasks(TaskFilter(assigned_agent_id=agent_id, statuses=statuses))

    async def get_task_stats(self) -> Dict[str, Any]:
        counts = await self.store.task_counts()
        return {
            "total": sum(counts["by_status"].values()),
            "by_status": counts["by_status"],
            "by_priority": counts["by_priority"],
            "dead_lettered": counts["dead_lettered"]["total"],
        }

    async def _finalize_parent(self, parent_task_id: str) -> None:
        parent = await self.store.finalize_parent(parent_task_id, self.clock.now())
        if parent is None:
            return

        logger.info("parent_task_finalized", task_id=parent.id, status=parent.status.value)
        if parent.parent_task_id:
            await self._finalize_parent(parent.parent_task_id)


__all__ = [
    'TaskQueue',
]
