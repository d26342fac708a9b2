"""
Agent models for Overwatch.

An agent is a logical worker with a declared capability set and a
concurrency limit. Agents are never deleted; removal moves them to
``stopped`` so their history stays auditable.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional
import json
import uuid

from ..utils.clock import from_iso, to_iso
from ..utils.errors import UnknownAgentTypeError


MIN_HEALTH = 0
MAX_HEALTH = 100


class AgentType(str, Enum):
    """Closed set of agent types known to the control plane."""
    ORCHESTRATOR = "orchestrator"
    SELF_HEALING = "self-healing-agent"
    WATCHDOG = "watchdog"
    SYNTAX_CHECKER = "syntax-checker"
    TYPE_ANALYZER = "type-analyzer"
    CONVERSATION_PARSER = "conversation-parser"
    WEB_SEARCHER = "web-searcher"
    HEALTH_MONITOR = "health-monitor"
    DIALOGUE = "dialogue-agent"
    WEB = "web-agent"
    SPOTIFY = "spotify-agent"
    MUSIC = "music-agent"
    MEDIA = "media-agent"
    FINANCE = "finance-agent"
    ALERT = "alert-agent"
    VISION = "vision-agent"
    SYSTEM_CONTROL = "system-control"

    @classmethod
    def parse(cls, value: Any) -> 'AgentType':
        """Coerce a string or AgentType, raising UnknownAgentTypeError."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownAgentTypeError(value) from None


class AgentStatus(str, Enum):
    """Status of an agent."""
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    STOPPED = "stopped"


ASSIGNABLE_STATUSES = (AgentStatus.IDLE, AgentStatus.BUSY)


def clamp_health(score: float) -> int:
    """Clamp a health score to [0, 100]."""
    return int(max(MIN_HEALTH, min(MAX_HEALTH, round(score))))


@dataclass
class Agent:
    """A registered logical worker."""
    agent_type: AgentType
    capabilities: FrozenSet[str]
    max_concurrent_tasks: int
    id: str = ""
    parent_id: Optional[str] = None
    status: AgentStatus = AgentStatus.IDLE
    current_workload: int = 0
    health_score: int = MAX_HEALTH
    last_heartbeat: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    monitors: List[str] = field(default_factory=list)
    monitored_by: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.id:
            self.id = f"agent_{uuid.uuid4().hex[:12]}"
        self.capabilities = frozenset(self.capabilities)
        self.health_score = clamp_health(self.health_score)

    @property
    def workload_percentage(self) -> float:
        if self.max_concurrent_tasks <= 0:
            return 100.0
        return self.current_workload / self.max_concurrent_tasks * 100

    @property
    def has_capacity(self) -> bool:
        return self.current_workload < self.max_concurrent_tasks

    @property
    def is_assignable(self) -> bool:
        return self.status in ASSIGNABLE_STATUSES and self.has_capacity

    def shares_capabilities(self, capabilities: Iterable[str]) -> bool:
        return bool(self.capabilities & set(capabilities))

    def heartbeat_age(self, now: datetime) -> Optional[float]:
        """Seconds since the last heartbeat, None if never seen."""
        if self.last_heartbeat is None:
            return None
        return (now - self.last_heartbeat).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.agent_type.value,
            "parent_id": self.parent_id,
            "capabilities": sorted(self.capabilities),
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "status": self.status.value,
            "current_workload": self.current_workload,
            "workload_percentage": round(self.workload_percentage, 2),
            "health_score": self.health_score,
            "last_heartbeat": to_iso(self.last_heartbeat),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "monitors": list(self.monitors),
            "monitored_by": list(self.monitored_by),
        }

    @classmethod
    def from_row(cls, row: Any) -> 'Agent':
        """Build an agent from an ``agents`` table row."""
        return cls(
            id=row["id"],
            agent_type=AgentType(row["agent_type"]),
            parent_id=row["parent_id"],
            capabilities=frozenset(json.loads(row["capabilities"])),
            max_concurrent_tasks=row["max_concurrent_tasks"],
            status=AgentStatus(row["status"]),
            current_workload=row["current_workload"],
            health_score=row["health_score"],
            last_heartbeat=from_iso(row["last_heartbeat"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


__all__ = [
    'AgentType',
    'AgentStatus',
    'Agent',
    'ASSIGNABLE_STATUSES',
    'clamp_health',
    'MIN_HEALTH',
    'MAX_HEALTH',
]
