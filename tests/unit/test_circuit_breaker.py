"""
Unit tests for the process circuit breaker.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from overwatch.supervision.circuit_breaker import FailureAction, ProcessCircuitBreaker
from overwatch.supervision.process_manager import Pm2ProcessManager
from overwatch.utils.errors import ProcessManagerError


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


class TestProcessCircuitBreaker:
    """Test opening, cooldown, backoff and the restart budget."""

    def test_backoff_is_exponential_and_capped(self):
        breaker = ProcessCircuitBreaker(backoff_base=1, backoff_multiplier=2, backoff_cap=30)

        assert [breaker.backoff_delay(n) for n in range(1, 7)] == [1, 2, 4, 8, 16, 30]

    def test_failures_schedule_restarts_until_open(self):
        breaker = ProcessCircuitBreaker(failure_threshold=3, reset_timeout=60)

        decisions = [breaker.record_failure("api", at(i), "errored") for i in range(3)]

        assert [d.action for d in decisions] == [FailureAction.RESTART] * 3
        assert [d.delay for d in decisions] == [1, 2, 4]
        state = breaker.state("api")
        assert state.is_circuit_open
        assert state.consecutive_failures == 3
        assert state.health_score == 40
        assert state.last_status == "errored"

    def test_open_circuit_suppresses_within_reset_timeout(self):
        breaker = ProcessCircuitBreaker(failure_threshold=3, reset_timeout=60)
        for i in range(3):
            breaker.record_failure("api", at(i), "errored")

        decision = breaker.record_failure("api", at(30), "errored")

        assert decision.action == FailureAction.SUPPRESSED
        assert breaker.state("api").consecutive_failures == 3

    def test_circuit_closes_after_reset_timeout(self):
        breaker = ProcessCircuitBreaker(failure_threshold=3, reset_timeout=60)
        for i in range(3):
            breaker.record_failure("api", at(i), "errored")

        decision = breaker.record_failure("api", at(2 + 61), "errored")

        assert decision.action == FailureAction.RESTART
        state = breaker.state("api")
        assert not state.is_circuit_open
        assert state.consecutive_failures == 1

    def test_restart_budget_exhaustion_requires_manual_intervention(self):
        breaker = ProcessCircuitBreaker(failure_threshold=10, max_restarts=2, restart_window=3600)
        breaker.begin_restart("api", at(0))
        breaker.begin_restart("api", at(10))

        decision = breaker.record_failure("api", at(20), "stopped")

        assert decision.action == FailureAction.EXHAUSTED
        state = breaker.state("api")
        assert state.requires_manual_intervention
        assert state.is_circuit_open
        assert state.health_score == 0
        assert breaker.record_failure("api", at(5000), "stopped").action == FailureAction.MANUAL

    def test_restart_count_resets_after_window(self):
        breaker = ProcessCircuitBreaker(max_restarts=2, restart_window=100)
        breaker.begin_restart("api", at(0))
        breaker.begin_restart("api", at(10))

        state = breaker.begin_restart("api", at(200))

        assert state.restart_count == 1
        assert not breaker.budget_exhausted(state, at(201))

    def test_success_rewards_only_after_failures(self):
        breaker = ProcessCircuitBreaker()
        breaker.record_failure("api", at(0), "errored")

        assert breaker.record_success("api", "online").health_score == 85
        assert breaker.record_success("api", "online").health_score == 85
        assert breaker.state("api").consecutive_failures == 0

    def test_restart_outcomes_adjust_health(self):
        breaker = ProcessCircuitBreaker()
        breaker.record_failure("api", at(0), "errored")
        breaker.record_failure("api", at(1), "errored")

        assert breaker.restart_failed("api").health_score == 50
        state = breaker.restart_succeeded("api")
        assert state.health_score == 80
        assert state.consecutive_failures == 0

    def test_reset_clears_manual_lock(self):
        breaker = ProcessCircuitBreaker(max_restarts=1)
        breaker.begin_restart("api", at(0))
        breaker.record_failure("api", at(1), "errored")

        state = breaker.reset("api")

        assert not state.requires_manual_intervention
        assert not state.is_circuit_open
        assert state.health_score == 100


class TestPm2ProcessManager:
    """Test the pm2 adapter without a pm2 installation."""

    def test_parse_jlist(self):
        output = (
            '[{"name": "api", "pm2_env": {"status": "online"}},'
            ' {"name": "worker", "pm2_env": {"status": "errored"}}]'
        )

        processes = Pm2ProcessManager.parse_jlist(output)

        assert [(p.name, p.status) for p in processes] == [("api", "online"), ("worker", "errored")]
        assert processes[0].is_online
        assert processes[1].is_failed

    def test_parse_garbage(self):
        with pytest.raises(ProcessManagerError):
            Pm2ProcessManager.parse_jlist("not json")

    @pytest.mark.asyncio
    async def test_list_retries_transient_failures(self, monkeypatch):
        manager = Pm2ProcessManager(list_retries=3)
        run = AsyncMock(side_effect=[
            ProcessManagerError("pm2 daemon busy"),
            '[{"name": "api", "pm2_env": {"status": "online"}}]',
        ])
        monkeypatch.setattr(manager, "_run", run)

        processes = await manager.list()

        assert [p.name for p in processes] == ["api"]
        assert run.await_count == 2
        run.assert_awaited_with("jlist")

    @pytest.mark.asyncio
    async def test_restart_runs_pm2_restart(self, monkeypatch):
        manager = Pm2ProcessManager()
        run = AsyncMock(return_value="")
        monkeypatch.setattr(manager, "_run", run)

        await manager.restart("api")

        run.assert_awaited_once_with("restart", "api")

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        manager = Pm2ProcessManager(binary=str(tmp_path / "no-such-pm2"), list_retries=1)

        with pytest.raises(ProcessManagerError):
            await manager.restart("api")
