"""
Durable orchestration store for Overwatch.

This module owns every SQL statement used by the control plane:
- Agents, their capabilities and peer monitoring links
- Tasks and their state transitions
- Agent failure records

Workload and health mutations are single conditional UPDATE statements, and
multi-step changes run inside one transaction, so independent monitoring
loops can touch the same agent without read-modify-write races.
"""

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .database import Database, Transaction
from ..models.agent import Agent, AgentStatus
from ..models.failure import AgentFailure, RecoveryMethod
from ..models.task import (
    RETRYABLE_STATUSES,
    TERMINAL_STATUSES,
    Task,
    TaskFilter,
    TaskStatus,
)
from ..utils.clock import to_iso
from ..utils.errors import (
    AgentCapacityError,
    AgentNotFoundError,
    InvalidTaskTransitionError,
    TaskNotFoundError,
)
from ..utils.logging import get_logger


logger = get_logger("overwatch.storage.store")


SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    agent_type TEXT NOT NULL,
    parent_id TEXT REFERENCES agents(id),
    capabilities TEXT NOT NULL,
    max_concurrent_tasks INTEGER NOT NULL CHECK (max_concurrent_tasks >= 1),
    status TEXT NOT NULL CHECK (status IN ('idle', 'busy', 'error', 'stopped')),
    current_workload INTEGER NOT NULL DEFAULT 0 CHECK (current_workload >= 0),
    health_score INTEGER NOT NULL DEFAULT 100 CHECK (health_score BETWEEN 0 AND 100),
    last_heartbeat TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status);
CREATE INDEX IF NOT EXISTS idx_agents_type ON agents(agent_type);
CREATE INDEX IF NOT EXISTS idx_agents_parent ON agents(parent_id);

CREATE TABLE IF NOT EXISTS agent_capabilities (
    agent_id TEXT NOT NULL REFERENCES agents(id),
    capability TEXT NOT NULL,
    PRIMARY KEY (agent_id, capability)
);

CREATE INDEX IF NOT EXISTS idx_agent_capabilities_capability
    ON agent_capabilities(capability);

CREATE TABLE IF NOT EXISTS agent_monitors (
    monitor_id TEXT NOT NULL REFERENCES agents(id),
    monitored_id TEXT NOT NULL REFERENCES agents(id),
    created_at TEXT NOT NULL,
    PRIMARY KEY (monitor_id, monitored_id),
    CHECK (monitor_id != monitored_id)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    payload TEXT NOT NULL,
    priority TEXT NOT NULL CHECK (priority IN ('low', 'medium', 'high', 'critical')),
    priority_rank INTEGER NOT NULL,
    status TEXT NOT NULL CHECK (status IN
        ('pending', 'assigned', 'in_progress', 'completed', 'failed', 'cancelled')),
    assigned_agent_id TEXT REFERENCES agents(id),
    parent_task_id TEXT REFERENCES tasks(id),
    retry_count INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    result TEXT,
    dead_lettered INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    assigned_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_agent ON tasks(assigned_agent_id, status);
CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_task_id);
CREATE INDEX IF NOT EXISTS idx_tasks_order ON tasks(priority_rank DESC, created_at ASC);

CREATE TABLE IF NOT EXISTS agent_failures (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL REFERENCES agents(id),
    parent_id TEXT,
    failure_type TEXT NOT NULL CHECK (failure_type IN
        ('crash', 'timeout', 'error', 'unresponsive', 'logic_error')),
    failure_reason TEXT,
    tasks_affected TEXT NOT NULL,
    detected_by TEXT,
    recovered INTEGER NOT NULL DEFAULT 0,
    recovery_method TEXT CHECK (recovery_method IS NULL OR recovery_method IN
        ('restart', 'replace', 'manual', 'watchdog')),
    recovery_time TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_failures_agent ON agent_failures(agent_id, created_at);
CREATE INDEX IF NOT EXISTS idx_failures_recovered ON agent_failures(recovered);
"""

_RELEASE_SLOT = """
    UPDATE agents SET
        current_workload = MAX(0, current_workload - 1),
        status = CASE
            WHEN status IN ('idle', 'busy') AND current_workload <= 1 THEN 'idle'
            WHEN status IN ('idle', 'busy') THEN 'busy'
            ELSE status
        END,
        updated_at = ?
    WHERE id = ?
"""


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class OrchestrationStore:
    """Persistence and atomic state changes for agents, tasks and failures."""

    def __init__(self, db: Database):
        self.db = db

    async def initialize(self) -> None:
        await self.db.connect()
        await self.db.executescript(SCHEMA)
        logger.info("store_initialized", path=str(self.db.db_path))

    async def close(self) -> None:
        await self.db.close()

    # Agents

    async def insert_agent(self, agent: Agent) -> None:
        async with self.db.transaction() as tx:
            await tx.execute("""
                INSERT INTO agents
                (id, agent_type, parent_id, capabilities, max_concurrent_tasks,
                 status, current_workload, health_score, last_heartbeat,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                agent.id,
                agent.agent_type.value,
                agent.parent_id,
                json.dumps(sorted(agent.capabilities)),
                agent.max_concurrent_tasks,
                agent.status.value,
                agent.current_workload,
                agent.health_score,
                to_iso(agent.last_heartbeat),
                to_iso(agent.created_at),
                to_iso(agent.updated_at),
            ))
            for capability in sorted(agent.capabilities):
                await tx.execute(
                    "INSERT INTO agent_capabilities (agent_id, capability) VALUES (?, ?)",
                    (agent.id, capability)
                )

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        row = await self.db.fetchone("SELECT * FROM agents WHERE id = ?", (agent_id,))
        if row is None:
            return None
        agent = Agent.from_row(row)
        agent.monitors = await self._linked_ids("monitored_id", "monitor_id", agent_id)
        agent.monitored_by = await self._linked_ids("monitor_id", "monitored_id", agent_id)
        return agent

    async def list_agents(
        self,
        parent_id: Optional[str] = None,
        agent_type: Optional[str] = None,
        statuses: Optional[Iterable[AgentStatus]] = None
    ) -> List[Agent]:
        query = "SELECT * FROM agents WHERE 1 = 1"
        params: List[Any] = []

        if parent_id is not None:
            query += " AND parent_id = ?"
            params.append(parent_id)
        if agent_type is not None:
            query += " AND agent_type = ?"
            params.append(agent_type)
        status_values = [AgentStatus(s).value for s in statuses or ()]
        if status_values:
            query += f" AND status IN ({_placeholders(status_values)})"
            params.extend(status_values)

        query += " ORDER BY created_at ASC, rowid ASC"
        rows = await self.db.fetchall(query, tuple(params))
        return [Agent.from_row(row) for row in rows]

    async def set_agent_status(
        self,
        agent_id: str,
        status: AgentStatus,
        now: datetime,
        workload: Optional[int] = None
    ) -> int:
        """Write status (and optionally workload) and refresh the heartbeat. Stopped agents are left untouched."""
        if workload is None:
            return await self.db.execute("""
                UPDATE agents SET status = ?, last_heartbeat = ?, updated_at = ?
                WHERE id = ? AND status != 'stopped'
            """, (status.value, to_iso(now), to_iso(now), agent_id))

        return await self.db.execute("""
            UPDATE agents SET status = ?, current_workload = ?, last_heartbeat = ?, updated_at = ?
            WHERE id = ? AND status != 'stopped'
        """, (status.value, max(0, int(workload)), to_iso(now), to_iso(now), agent_id))

    async def touch_heartbeat(self, agent_id: str, now: datetime) -> int:
        return await self.db.execute("""
            UPDATE agents SET last_heartbeat = ?
            WHERE id = ? AND status != 'stopped'
        """, (to_iso(now), agent_id))

    async def set_health(self, agent_id: str, score: float, now: datetime) -> Optional[int]:
        async with self.db.transaction() as tx:
            changed = await tx.execute("""
                UPDATE agents SET health_score = MAX(0, MIN(100, CAST(ROUND(?) AS INTEGER))), updated_at = ?
                WHERE id = ?
            """, (score, to_iso(now), agent_id))
            if not changed:
                return None
            row = await tx.fetchone("SELECT health_score FROM agents WHERE id = ?", (agent_id,))
            return row["health_score"]

    async def adjust_health(self, agent_id: str, delta: int, now: datetime) -> Optional[int]:
        """Apply a clamped delta to the health score and return the new value."""
        async with self.db.transaction() as tx:
            changed = await tx.execute("""
                UPDATE agents SET health_score = MAX(0, MIN(100, health_score + ?)), updated_at = ?
                WHERE id = ?
            """, (int(delta), to_iso(now), agent_id))
            if not changed:
                return None
            row = await tx.fetchone("SELECT health_score FROM agents WHERE id = ?", (agent_id,))
            return row["health_score"]

    async def reset_agent(self, agent_id: str, health: Optional[int], health_delta: int, now: datetime) -> int:
        """Return a non-stopped agent to idle with no workload and a fresh heartbeat."""
        if health is not None:
            return await self.db.execute("""
                UPDATE agents SET status = 'idle', current_workload = 0,
                    health_score = MAX(0, MIN(100, ?)),
                    last_heartbeat = ?, updated_at = ?
                WHERE id = ? AND status != 'stopped'
            """, (int(health), to_iso(now), to_iso(now), agent_id))

        return await self.db.execute("""
            UPDATE agents SET status = 'idle', current_workload = 0,
                health_score = MAX(0, MIN(100, health_score + ?)),
                last_heartbeat = ?, updated_at = ?
            WHERE id = ? AND status != 'stopped'
        """, (int(health_delta), to_iso(now), to_iso(now), agent_id))

    async def query_available_agents(
        self,
        capabilities: Iterable[str],
        exclude: Iterable[str] = (),
        min_health: int = 50
    ) -> List[Agent]:
        wanted = sorted(set(capabilities))
        if not wanted:
            return []
        excluded = sorted(set(exclude))

        query = f"""
            SELECT a.* FROM agents a
            WHERE a.status IN ('idle', 'busy')
              AND a.health_score >= ?
              AND EXISTS (
                  SELECT 1 FROM agent_capabilities c
                  WHERE c.agent_id = a.id AND c.capability IN ({_placeholders(wanted)})
              )
        """
        params: List[Any] = [min_health, *wanted]
        if excluded:
            query += f" AND a.id NOT IN ({_placeholders(excluded)})"
            params.extend(excluded)
        query += " ORDER BY a.current_workload ASC, a.health_score DESC, a.created_at ASC, a.rowid ASC"

        rows = await self.db.fetchall(query, tuple(params))
        return [Agent.from_row(row) for row in rows]

    # Monitoring links

    async def add_monitor_link(self, monitor_id: str, monitored_id: str, now: datetime) -> int:
        return await self.db.execute("""
            INSERT OR IGNORE INTO agent_monitors (monitor_id, monitored_id, created_at)
            VALUES (?, ?, ?)
        """, (monitor_id, monitored_id, to_iso(now)))

    async def remove_monitor_link(self, monitor_id: str, monitored_id: str) -> int:
        return await self.db.execute(
            "DELETE FROM agent_monitors WHERE monitor_id = ? AND monitored_id = ?",
            (monitor_id, monitored_id)
        )

    async def remove_links_for(self, agent_id: str) -> int:
        return await self.db.execute(
            "DELETE FROM agent_monitors WHERE monitor_id = ? OR monitored_id = ?",
            (agent_id, agent_id)
        )

    async def list_monitor_links(self) -> List[Tuple[str, str]]:
        rows = await self.db.fetchall(
            "SELECT monitor_id, monitored_id FROM agent_monitors ORDER BY created_at, monitor_id"
        )
        return [(row["monitor_id"], row["monitored_id"]) for row in rows]

    async def _linked_ids(self, select_col: str, where_col: str, agent_id: str) -> List[str]:
        rows = await self.db.fetchall(
            f"SELECT {select_col} FROM agent_monitors WHERE {where_col} = ? ORDER BY created_at",
            (agent_id,)
        )
        return [row[select_col] for row in rows]

    # Tasks

    async def insert_task(self, task: Task) -> None:
        await self.db.execute("""
            INSERT INTO tasks
            (id, type, payload, priority, priority_rank, status, assigned_agent_id,
             parent_task_id, retry_count, error, result, dead_lettered,
             created_at, assigned_at, started_at, completed_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            task.id,
            task.type,
            json.dumps(task.payload),
            task.priority.value,
            task.priority.rank,
            task.status.value,
            task.assigned_agent_id,
            task.parent_task_id,
            task.retry_count,
            task.error,
            json.dumps(task.result) if task.result is not None else None,
            int(task.dead_lettered),
            to_iso(task.created_at),
            to_iso(task.assigned_at),
            to_iso(task.started_at),
            to_iso(task.completed_at),
            to_iso(task.updated_at),
        ))

    async def get_task(self, task_id: str) -> Optional[Task]:
        row = await self.db.fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return Task.from_row(row) if row else None

    async def query_tasks(self, task_filter: TaskFilter) -> List[Task]:
        query = "SELECT * FROM tasks WHERE 1 = 1"
        params: List[Any] = []

        statuses = [s.value for s in task_filter.all_statuses()]
        if statuses:
            query += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)
        if task_filter.assigned_agent_id is not None:
            query += " AND assigned_agent_id = ?"
            params.append(task_filter.assigned_agent_id)
        if task_filter.parent_task_id is not None:
            query += " AND parent_task_id = ?"
            params.append(task_filter.parent_task_id)
        if task_filter.type is not None:
            query += " AND type = ?"
            params.append(task_filter.type)
        if task_filter.priority is not None:
            query += " AND priority = ?"
            params.append(task_filter.priority.value)
        if task_filter.created_after is not None:
            query += " AND created_at >= ?"
            params.append(to_iso(task_filter.created_after))
        if task_filter.created_before is not None:
            query += " AND created_at < ?"
            params.append(to_iso(task_filter.created_before))

        query += " ORDER BY priority_rank DESC, created_at ASC, rowid ASC"
        if task_filter.limit:
            query += " LIMIT ?"
            params.append(task_filter.limit)

        rows = await self.db.fetchall(query, tuple(params))
        return [Task.from_row(row) for row in rows]

    async def assign_task(self, task_id: str, agent_id: str, now: datetime) -> Task:
        """
        Assign a task to an agent in one transaction.

        A previous active assignment on another agent releases that agent's
        slot. The new agent's workload only increases while it is idle/busy
        and below its concurrency limit.

        Raises:
            TaskNotFoundError, AgentNotFoundError, AgentCapacityError,
            InvalidTaskTransitionError
        """
        async with self.db.transaction() as tx:
            task = await self._require_task(tx, task_id)
            if task.is_terminal:
                raise InvalidTaskTransitionError(task_id, task.status.value, TaskStatus.ASSIGNED.value)

            if task.is_active and task.assigned_agent_id == agent_id:
                return task

            if task.is_active and task.assigned_agent_id:
                await tx.execute(_RELEASE_SLOT, (to_iso(now), task.assigned_agent_id))

            claimed = await tx.execute("""
                UPDATE agents SET
                    current_workload = current_workload + 1,
                    status = 'busy',
                    updated_at = ?
                WHERE id = ?
                  AND status IN ('idle', 'busy')
                  AND current_workload < max_concurrent_tasks
            """, (to_iso(now), agent_id))
            if not claimed:
                exists = await tx.fetchone("SELECT 1 FROM agents WHERE id = ?", (agent_id,))
                if exists is None:
                    raise AgentNotFoundError(agent_id)
                raise AgentCapacityError(agent_id)

            await tx.execute("""
                UPDATE tasks SET status = 'assigned', assigned_agent_id = ?,
                    assigned_at = ?, started_at = NULL, updated_at = ?
                WHERE id = ?
            """, (agent_id, to_iso(now), to_iso(now), task_id))

            return await self._require_task(tx, task_id)

    async def transition_task(
        self,
        task_id: str,
        allowed_from: Sequence[TaskStatus],
        target: TaskStatus,
        now: datetime,
        fields: Optional[Dict[str, Any]] = None
    ) -> Task:
        """Move a task to ``target`` if its current status is allowed."""
        async with self.db.transaction() as tx:
            task = await self._require_task(tx, task_id)
            if task.status not in allowed_from:
                raise InvalidTaskTransitionError(task_id, task.status.value, target.value)

            assignments = ["status = ?", "updated_at = ?"]
            params: List[Any] = [target.value, to_iso(now)]
            for column, value in (fields or {}).items():
                assignments.append(f"{column} = ?")
                params.append(value)
            params.append(task_id)

            await tx.execute(f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", tuple(params))
            return await self._require_task(tx, task_id)

    async def finish_task(
        self,
        task_id: str,
        target: TaskStatus,
        now: datetime,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ) -> Task:
        """Complete or fail an active task and release its agent slot."""
        async with self.db.transaction() as tx:
            task = await self._require_task(tx, task_id)
            if not task.is_active:
                raise InvalidTaskTransitionError(task_id, task.status.value, target.value)

            if task.assigned_agent_id:
                await tx.execute(_RELEASE_SLOT, (to_iso(now), task.assigned_agent_id))

            await tx.execute("""
                UPDATE tasks SET status = ?, result = ?, error = ?, completed_at = ?, updated_at = ?
                WHERE id = ?
            """, (
                target.value,
                json.dumps(result) if result is not None else None,
                error,
                to_iso(now),
                to_iso(now),
                task_id,
            ))
            return await self._require_task(tx, task_id)

    async def retry_task(self, task_id: str, max_retries: Optional[int], now: datetime) -> Task:
        """
        Return a task to pending with retry_count + 1.

        Once ``max_retries`` retries have been used the task is dead-lettered
        instead: it moves to failed with ``dead_lettered`` set.
        """
        async with self.db.transaction() as tx:
            task = await self._require_task(tx, task_id)
            if task.status not in RETRYABLE_STATUSES:
                raise InvalidTaskTransitionError(task_id, task.status.value, TaskStatus.PENDING.value)

            if task.is_active and task.assigned_agent_id:
                await tx.execute(_RELEASE_SLOT, (to_iso(now), task.assigned_agent_id))

            if max_retries is not None and task.retry_count >= max_retries:
                await tx.execute("""
                    UPDATE tasks SET status = 'failed', dead_lettered = 1,
                        error = ?, completed_at = ?, updated_at = ?
                    WHERE id = ?
                """, (
                    f"retry budget exhausted after {task.retry_count} retries",
                    to_iso(now),
                    to_iso(now),
                    task_id,
                ))
            else:
                await tx.execute("""
                    UPDATE tasks SET status = 'pending', retry_count = retry_count + 1,
                        assigned_at = NULL, started_at = NULL, completed_at = NULL,
                        updated_at = ?
                    WHERE id = ?
                """, (to_iso(now), task_id))

            return await self._require_task(tx, task_id)

    async def cancel_task_tree(self, task_id: str, now: datetime) -> List[str]:
        """Cancel a task and its non-terminal descendants; returns cancelled ids."""
        async with self.db.transaction() as tx:
            root = await self._require_task(tx, task_id)
            if root.is_terminal:
                raise InvalidTaskTransitionError(task_id, root.status.value, TaskStatus.CANCELLED.value)

            cancelled: List[str] = []
            frontier = [root]
            while frontier:
                task = frontier.pop(0)
                if not task.is_terminal:
                    if task.is_active and task.assigned_agent_id:
                        await tx.execute(_RELEASE_SLOT, (to_iso(now), task.assigned_agent_id))
                    await tx.execute("""
                        UPDATE tasks SET status = 'cancelled', completed_at = ?, updated_at = ?
                        WHERE id = ?
                    """, (to_iso(now), to_iso(now), task.id))
                    cancelled.append(task.id)

                rows = await tx.fetchall("SELECT * FROM tasks WHERE parent_task_id = ?", (task.id,))
                frontier.extend(Task.from_row(row) for row in rows)

            return cancelled

    async def finalize_parent(self, parent_id: str, now: datetime) -> Optional[Task]:
        """Close a decomposed parent once every subtask is terminal."""
        async with self.db.transaction() as tx:
            parent = await tx.fetchone("SELECT * FROM tasks WHERE id = ?", (parent_id,))
            if parent is None or parent["status"] != TaskStatus.IN_PROGRESS.value:
                return None

            rows = await tx.fetchall(
                "SELECT id, status FROM tasks WHERE parent_task_id = ?", (parent_id,)
            )
            if not rows:
                return None
            statuses = {row["id"]: row["status"] for row in rows}
            terminal = {s.value for s in TERMINAL_STATUSES}
            if any(status not in terminal for status in statuses.values()):
                return None

            outcome = (
                TaskStatus.COMPLETED
                if all(s == TaskStatus.COMPLETED.value for s in statuses.values())
                else TaskStatus.FAILED
            )
            await tx.execute("""
                UPDATE tasks SET status = ?, result = ?, completed_at = ?, updated_at = ?
                WHERE id = ?
            """, (
                outcome.value,
                json.dumps({"subtasks": statuses}),
                to_iso(now),
                to_iso(now),
                parent_id,
            ))
            return await self._require_task(tx, parent_id)

    async def task_counts(self) -> Dict[str, Dict[str, int]]:
        by_status = await self.db.fetchall("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status")
        by_priority = await self.db.fetchall("SELECT priority, COUNT(*) AS n FROM tasks GROUP BY priority")
        dead = await self.db.fetchone("SELECT COUNT(*) AS n FROM tasks WHERE dead_lettered = 1")
        return {
            "by_status": {row["status"]: row["n"] for row in by_status},
            "by_priority": {row["priority"]: row["n"] for row in by_priority},
            "dead_lettered": {"total": dead["n"] if dead else 0},
        }

    async def _require_task(self, tx: Transaction, task_id: str) -> Task:
        row = await tx.fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if row is None:
            raise TaskNotFoundError(task_id)
        return Task.from_row(row)

    # Failures

    async def record_failure(self, failure: AgentFailure, penalty: int, now: datetime) -> AgentFailure:
        """
        Persist a failure, put the agent in error and apply the health penalty.

        ``tasks_affected`` is filled with the agent's in-progress tasks as they
        are at this moment.
        """
        async with self.db.transaction() as tx:
            rows = await tx.fetchall("""
                SELECT id FROM tasks WHERE assigned_agent_id = ? AND status = 'in_progress'
                ORDER BY created_at
            """, (failure.agent_id,))
            failure.tasks_affected = [row["id"] for row in rows]
            failure.created_at = now

            await tx.execute("""
                INSERT INTO agent_failures
                (id, agent_id, parent_id, failure_type, failure_reason, tasks_affected,
                 detected_by, recovered, recovery_method, recovery_time, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL, NULL, ?)
            """, (
                failure.id,
                failure.agent_id,
                failure.parent_id,
                failure.failure_type.value,
                failure.failure_reason,
                json.dumps(failure.tasks_affected),
                failure.detected_by,
                to_iso(now),
            ))

            await tx.execute("""
                UPDATE agents SET status = 'error',
                    health_score = MAX(0, MIN(100, health_score - ?)),
                    updated_at = ?
                WHERE id = ? AND status != 'stopped'
            """, (int(penalty), to_iso(now), failure.agent_id))

        return failure

    async def get_failure(self, failure_id: str) -> Optional[AgentFailure]:
        row = await self.db.fetchone("SELECT * FROM agent_failures WHERE id = ?", (failure_id,))
        return AgentFailure.from_row(row) if row else None

    async def mark_failure_recovered(self, failure_id: str, method: RecoveryMethod, now: datetime) -> int:
        return await self.db.execute("""
            UPDATE agent_failures SET recovered = 1, recovery_method = ?, recovery_time = ?
            WHERE id = ? AND recovered = 0
        """, (method.value, to_iso(now), failure_id))

    async def query_failures(
        self,
        agent_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        recovered: Optional[bool] = None
    ) -> List[AgentFailure]:
        query = "SELECT * FROM agent_failures WHERE 1 = 1"
        params: List[Any] = []

        if agent_id is not None:
            query += " AND agent_id = ?"
            params.append(agent_id)
        if since is not None:
            query += " AND created_at >= ?"
            params.append(to_iso(since))
        if until is not None:
            query += " AND created_at < ?"
            params.append(to_iso(until))
        if recovered is not None:
            query += " AND recovered = ?"
            params.append(int(recovered))

        query += " ORDER BY created_at DESC"
        rows = await self.db.fetchall(query, tuple(params))
        return [AgentFailure.from_row(row) for row in rows]


__all__ = [
    'OrchestrationStore',
    'SCHEMA',
]
