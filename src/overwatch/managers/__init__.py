"""
Manager components for Overwatch.
"""

from .base import BaseManager, HealthStatus, ManagerError, ManagerNotReadyError, ManagerState
from .agent import AgentManager
from .failure_handler import FailureHandler
from .task_queue import TaskQueue
from .workload import WorkloadMonitor

__all__ = [
    'BaseManager',
    'HealthStatus',
    'ManagerError',
    'ManagerNotReadyError',
    'ManagerState',
    'AgentManager',
    'FailureHandler',
    'TaskQueue',
    'WorkloadMonitor',
]
