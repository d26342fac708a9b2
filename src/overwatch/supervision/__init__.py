"""
Supervision layers for Overwatch.

Logical supervision watches agents (mutual monitoring, watchdog); process
supervision watches the OS processes that host them (self-healing).
"""

from .circuit_breaker import CircuitState, FailureAction, FailureDecision, ProcessCircuitBreaker
from .mutual import MutualMonitoringService
from .process_manager import Pm2ProcessManager, ProcessInfo, ProcessManager
from .self_healing import SelfHealingSupervisor
from .watchdog import HeartbeatResponder, WatchdogService

__all__ = [
    'CircuitState',
    'FailureAction',
    'FailureDecision',
    'ProcessCircuitBreaker',
    'MutualMonitoringService',
    'Pm2ProcessManager',
    'ProcessInfo',
    'ProcessManager',
    'SelfHealingSupervisor',
    'HeartbeatResponder',
    'WatchdogService',
]
