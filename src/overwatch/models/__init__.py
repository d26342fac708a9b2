"""
Data models for Overwatch.
"""

from .agent import Agent, AgentStatus, AgentType, clamp_health
from .capabilities import AgentTypeSpec, CapabilityRegistry
from .failure import AgentFailure, FailureType, RecoveryMethod, RECOVERY_STRATEGIES
from .task import Task, TaskFilter, TaskPriority, TaskStatus

__all__ = [
    'Agent',
    'AgentStatus',
    'AgentType',
    'clamp_health',
    'AgentTypeSpec',
    'CapabilityRegistry',
    'AgentFailure',
    'FailureType',
    'RecoveryMethod',
    'RECOVERY_STRATEGIES',
    'Task',
    'TaskFilter',
    'TaskPriority',
    'TaskStatus',
]
