"""
Per-process circuit breaker for the self-healing supervisor.

The breaker holds no timers and performs no I/O: callers pass the current
time in and act on the returned decision.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from ..utils.clock import to_iso


class FailureAction(str, Enum):
    """What the supervisor should do about a reported process failure."""
    RESTART = "restart"
    SUPPRESSED = "suppressed"
    EXHAUSTED = "exhausted"
    MANUAL = "manual"


@dataclass
class FailureDecision:
    action: FailureAction
    delay: float = 0.0


@dataclass
class CircuitState:
    """Restart bookkeeping for one named process."""
    name: str
    consecutive_failures: int = 0
    last_failure_time: Optional[datetime] = None
    last_restart_time: Optional[datetime] = None
    restart_count: int = 0
    is_circuit_open: bool = False
    health_score: int = 100
    requires_manual_intervention: bool = False
    last_status: Optional[str] = None

    def adjust_health(self, delta: int) -> int:
        self.health_score = max(0, min(100, self.health_score + delta))
        return self.health_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_time": to_iso(self.last_failure_time),
            "last_restart_time": to_iso(self.last_restart_time),
            "restart_count": self.restart_count,
            "is_circuit_open": self.is_circuit_open,
            "health_score": self.health_score,
            "requires_manual_intervention": self.requires_manual_intervention,
            "last_status": self.last_status,
        }


class ProcessCircuitBreaker:
    """
    Circuit breaker with a restart budget and exponential backoff.

    - ``failure_threshold`` consecutive failures open the circuit
    - an open circuit ignores failures until ``reset_timeout`` seconds have
      passed since the last one, then closes
    - at most ``max_restarts`` restarts per ``restart_window``; running out
      opens the circuit for good until ``reset()``
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_timeout: float = 60.0,
        max_restarts: int = 5,
        restart_window: float = 3600.0,
        backoff_base: float = 1.0,
        backoff_multiplier: float = 2.0,
        backoff_cap: float = 30.0
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.max_restarts = max_restarts
        self.restart_window = restart_window
        self.backoff_base = backoff_base
        self.backoff_multiplier = backoff_multiplier
        self.backoff_cap = backoff_cap
        self._states: Dict[str, CircuitState] = {}

    def state(self, name: str) -> CircuitState:
        if name not in self._states:
            self._states[name] = CircuitState(name=name)
        return self._states[name]

    def states(self) -> Dict[str, CircuitState]:
        return dict(self._states)

    def backoff_delay(self, consecutive_failures: int) -> float:
        exponent = max(0, consecutive_failures - 1)
        return min(self.backoff_base * (self.backoff_multiplier ** exponent), self.backoff_cap)

    def budget_exhausted(self, state: CircuitState, now: datetime) -> bool:
        if state.last_restart_time is None:
            return False
        within_window = now - state.last_restart_time < timedelta(seconds=self.restart_window)
        return within_window and state.restart_count >= self.max_restarts

    def record_failure(self, name: str, now: datetime, status: Optional[str] = None) -> FailureDecision:
        state = self.state(name)
        state.last_status = status or state.last_status

        if state.requires_manual_intervention:
            return FailureDecision(FailureAction.MANUAL)

        if state.is_circuit_open:
            if now - state.last_failure_time < timedelta(seconds=self.reset_timeout):
                return FailureDecision(FailureAction.SUPPRESSED)
            state.is_circuit_open = False
            state.consecutive_failures = 0

        if self.budget_exhausted(state, now):
            state.is_circuit_open = True
            state.health_score = 0
            state.requires_manual_intervention = True
            return FailureDecision(FailureAction.EXHAUSTED)

        state.consecutive_failures += 1
        state.last_failure_time = now
        state.adjust_health(-20)
        if state.consecutive_failures >= self.failure_threshold:
            state.is_circuit_open = True

        return FailureDecision(FailureAction.RESTART, self.backoff_delay(state.consecutive_failures))

    def begin_restart(self, name: str, now: datetime) -> CircuitState:
        """Count a restart attempt against the budget."""
        state = self.state(name)
        if state.last_restart_time is not None and \
                now - state.last_restart_time > timedelta(seconds=self.restart_window):
            state.restart_count = 0
        state.restart_count += 1
        state.last_restart_time = now
        return state

    def restart_succeeded(self, name: str) -> CircuitState:
        state = self.state(name)
        state.consecutive_failures = 0
        state.adjust_health(30)
        return state

    def restart_failed(self, name: str) -> CircuitState:
        state = self.state(name)
        state.adjust_health(-10)
        return state

    def record_success(self, name: str, status: Optional[str] = None) -> CircuitState:
        state = self.state(name)
        state.last_status = status or state.last_status
        if state.consecutive_failures > 0:
            state.consecutive_failures = 0
            state.adjust_health(5)
        return state

    def reset(self, name: str) -> CircuitState:
        """Clear every flag, including the manual-intervention lock."""
        self._states[name] = CircuitState(name=name)
        return self._states[name]


__all__ = [
    'CircuitState',
    'FailureAction',
    'FailureDecision',
    'ProcessCircuitBreaker',
]
