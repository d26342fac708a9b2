"""
Failure records for Overwatch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import json
import uuid

from ..utils.clock import from_iso, to_iso


class FailureType(str, Enum):
    """Classification of a detected agent failure."""
    CRASH = "crash"
    TIMEOUT = "timeout"
    ERROR = "error"
    UNRESPONSIVE = "unresponsive"
    LOGIC_ERROR = "logic_error"


class RecoveryMethod(str, Enum):
    """How a failure was recovered."""
    RESTART = "restart"
    REPLACE = "replace"
    MANUAL = "manual"
    WATCHDOG = "watchdog"


# transient failures restart the same agent, structural ones replace it
RECOVERY_STRATEGIES: Dict[FailureType, RecoveryMethod] = {
    FailureType.CRASH: RecoveryMethod.RESTART,
    FailureType.ERROR: RecoveryMethod.RESTART,
    FailureType.TIMEOUT: RecoveryMethod.RESTART,
    FailureType.UNRESPONSIVE: RecoveryMethod.RESTART,
    FailureType.LOGIC_ERROR: RecoveryMethod.REPLACE,
}


@dataclass
class AgentFailure:
    """One detected failure event."""
    agent_id: str
    failure_type: FailureType
    id: str = ""
    parent_id: Optional[str] = None
    failure_reason: Optional[str] = None
    tasks_affected: List[str] = field(default_factory=list)
    detected_by: Optional[str] = None
    recovered: bool = False
    recovery_method: Optional[RecoveryMethod] = None
    recovery_time: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"failure_{uuid.uuid4().hex[:12]}"

    @property
    def recovery_strategy(self) -> RecoveryMethod:
        return RECOVERY_STRATEGIES[self.failure_type]

    @property
    def recovery_seconds(self) -> Optional[float]:
        if self.recovery_time is None or self.created_at is None:
            return None
        return (self.recovery_time - self.created_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "parent_id": self.parent_id,
            "failure_type": self.failure_type.value,
            "failure_reason": self.failure_reason,
            "tasks_affected": list(self.tasks_affected),
            "detected_by": self.detected_by,
            "recovered": self.recovered,
            "recovery_method": self.recovery_method.value if self.recovery_method else None,
            "recovery_time": to_iso(self.recovery_time),
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Any) -> 'AgentFailure':
        return cls(
            id=row["id"],
            agent_id=row["agent_id"],
            parent_id=row["parent_id"],
            failure_type=FailureType(row["failure_type"]),
            failure_reason=row["failure_reason"],
            tasks_affected=json.loads(row["tasks_affected"]) if row["tasks_affected"] else [],
            detected_by=row["detected_by"],
            recovered=bool(row["recovered"]),
            recovery_method=RecoveryMethod(row["recovery_method"]) if row["recovery_method"] else None,
            recovery_time=from_iso(row["recovery_time"]),
            created_at=from_iso(row["created_at"]),
        )


__all__ = [
    'AgentFailure',
    'FailureType',
    'RecoveryMethod',
    'RECOVERY_STRATEGIES',
]
