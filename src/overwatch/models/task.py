"""
Task models for Overwatch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
import json
import uuid

from ..utils.clock import from_iso, to_iso
from ..utils.errors import ValidationError


class TaskStatus(str, Enum):
    """Lifecycle state of a task."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    """Task priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> 'TaskPriority':
        """Coerce a string or TaskPriority; missing values mean medium."""
        if isinstance(value, cls):
            return value
        if value is None or value == "":
            return cls.MEDIUM
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                "priority", value, f"must be one of {', '.join(p.value for p in cls)}"
            ) from None


_PRIORITY_RANK = {
    TaskPriority.LOW: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.HIGH: 3,
    TaskPriority.CRITICAL: 4,
}

ACTIVE_STATUSES = (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS)
TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)
RETRYABLE_STATUSES = (TaskStatus.FAILED, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS)


@dataclass
class Task:
    """A unit of delegated work."""
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: TaskPriority = TaskPriority.MEDIUM
    id: str = ""
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    retry_count: int = 0
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    dead_lettered: bool = False
    created_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"task_{uuid.uuid4().hex[:12]}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_decomposed(self) -> bool:
        return bool(self.payload.get("decomposed"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "priority": self.priority.value,
            "status": self.status.value,
            "assigned_agent_id": self.assigned_agent_id,
            "parent_task_id": self.parent_task_id,
            "retry_count": self.retry_count,
            "error": self.error,
            "result": self.result,
            "dead_lettered": self.dead_lettered,
            "created_at": to_iso(self.created_at),
            "assigned_at": to_iso(self.assigned_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Any) -> 'Task':
        return cls(
            id=row["id"],
            type=row["type"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            priority=TaskPriority(row["priority"]),
            status=TaskStatus(row["status"]),
            assigned_agent_id=row["assigned_agent_id"],
            parent_task_id=row["parent_task_id"],
            retry_count=row["retry_count"],
            error=row["error"],
            result=json.loads(row["result"]) if row["result"] else None,
            dead_lettered=bool(row["dead_lettered"]),
            created_at=from_iso(row["created_at"]),
            assigned_at=from_iso(row["assigned_at"]),
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(row["completed_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class TaskFilter:
    """Query filter for tasks. Unset fields do not constrain the result."""
    status: Optional[TaskStatus] = None
    statuses: Optional[Sequence[TaskStatus]] = None
    assigned_agent_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    type: Optional[str] = None
    priority: Optional[TaskPriority] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: Optional[int] = None

    def all_statuses(self) -> List[TaskStatus]:
        result = list(self.statuses or [])
        if self.status is not None and self.status not in result:
            result.append(self.status)
        return result


__all__ = [
    'Task',
    'TaskStatus',
    'TaskPriority',
    'TaskFilter',
    'ACTIVE_STATUSES',
    'TERMINAL_STATUSES',
    'RETRYABLE_STATUSES',
]
