"""
Functional tests for mutual monitoring, the watchdog and process self-healing.
"""

import pytest
from aiohttp.test_utils import TestServer

from overwatch.health import HealthReporter, create_health_app
from overwatch.models.agent import AgentStatus
from overwatch.models.failure import FailureType, RecoveryMethod
from overwatch.supervision.circuit_breaker import FailureAction
from overwatch.supervision.watchdog import HeartbeatResponder
from overwatch.utils.errors import AgentNotFoundError, ValidationError


pytestmark = pytest.mark.functional


class TestMutualMonitoring:
    """Test peer links and peer failure detection."""

    @pytest.mark.asyncio
    async def test_stale_peer_is_reported_to_its_monitor(self, mutual_monitoring, agent_manager, failure_handler,
                                                         bus, recorder, clock):
        agent_a = await agent_manager.spawn_child_agent(None, "web-agent")
        agent_b = await agent_manager.spawn_child_agent(None, "web-agent")
        await mutual_monitoring.setup_mutual_monitoring(agent_a, agent_b)
        bus.subscribe(agent_b, recorder.handle)

        clock.advance(130)
        await agent_manager.record_heartbeat(agent_b)

        unhealthy = await mutual_monitoring.check_monitored_agents()
        await bus.drain()

        assert unhealthy == [agent_a]
        detected = recorder.of_type("agent_failure_detected")
        assert len(detected) == 1
        assert detected[0].recipient == agent_b
        assert detected[0].payload["failed_agent_id"] == agent_a
        assert detected[0].payload["reason"] == "heartbeat stale"

        failures = await failure_handler.list_failures(agent_id=agent_a)
        assert [f.failure_type for f in failures] == [FailureType.UNRESPONSIVE]
        assert failures[0].detected_by == "mutual-monitoring"

    @pytest.mark.asyncio
    async def test_detected_failure_is_recovered(self, mutual_monitoring, agent_manager, failure_handler,
                                                 scheduler, clock):
        agent_a = await agent_manager.spawn_child_agent(None, "web-agent")
        agent_b = await agent_manager.spawn_child_agent(None, "web-agent")
        await mutual_monitoring.setup_mutual_monitoring(agent_a, agent_b)

        clock.advance(130)
        await agent_manager.record_heartbeat(agent_b)
        await mutual_monitoring.check_monitored_agents()
        await scheduler.run_due()

        agent = await agent_manager.get_agent(agent_a)
        assert agent.status == AgentStatus.IDLE
        assert agent.health_score == 90
        assert agent.last_heartbeat == clock.now()
        failure = (await failure_handler.list_failures(agent_id=agent_a))[0]
        assert failure.recovery_method == RecoveryMethod.RESTART

    @pytest.mark.asyncio
    async def test_agent_in_error_is_not_recorded_twice(self, mutual_monitoring, agent_manager, failure_handler):
        agent_a = await agent_manager.spawn_child_agent(None, "web-agent")
        agent_b = await agent_manager.spawn_child_agent(None, "web-agent")
        await mutual_monitoring.setup_mutual_monitoring(agent_a, agent_b)
        await failure_handler.record_failure(agent_a, FailureType.ERROR, auto_recover=False)

        assert await mutual_monitoring.check_monitored_agents() == [agent_a]
        assert len(await failure_handler.list_failures(agent_id=agent_a)) == 1

    @pytest.mark.asyncio
    async def test_healthy_pair(self, mutual_monitoring, agent_manager):
        agent_a = await agent_manager.spawn_child_agent(None, "web-agent")
        agent_b = await agent_manager.spawn_child_agent(None, "web-agent")
        await mutual_monitoring.setup_mutual_monitoring(agent_a, agent_b)

        assert await mutual_monitoring.check_monitored_agents() == []

    @pytest.mark.asyncio
    async def test_setup_is_idempotent_and_validated(self, mutual_monitoring, agent_manager):
        agent_a = await agent_manager.spawn_child_agent(None, "web-agent")
        agent_b = await agent_manager.spawn_child_agent(None, "web-agent")

        await mutual_monitoring.setup_mutual_monitoring(agent_a, agent_b)
        await mutual_monitoring.setup_mutual_monitoring(agent_b, agent_a)

        assert sorted(await mutual_monitoring.get_monitoring_pairs()) == sorted([(agent_a, agent_b), (agent_b, agent_a)])
        with pytest.raises(ValidationError):
            await mutual_monitoring.setup_mutual_monitoring(agent_a, agent_a)
        with pytest.raises(AgentNotFoundError):
            await mutual_monitoring.setup_mutual_monitoring(agent_a, "agent_missing")

        await mutual_monitoring.remove_mutual_monitoring(agent_a, agent_b)
        assert await mutual_monitoring.get_monitoring_pairs() == []

    @pytest.mark.asyncio
    async def test_auto_setup_chains_agents_of_a_type(self, mutual_monitoring, agent_manager):
        web = [await agent_manager.spawn_child_agent(None, "web-agent") for _ in range(3)]
        await agent_manager.spawn_child_agent(None, "dialogue-agent")

        assert await mutual_monitoring.auto_setup_monitoring() == 2

        pairs = set(await mutual_monitoring.get_monitoring_pairs())
        assert pairs == {
            (web[0], web[1]), (web[1], web[0]),
            (web[1], web[2]), (web[2], web[1]),
        }


class TestWatchdog:
    """Test liveness checks of critical agents."""

    @pytest.mark.asyncio
    async def test_responsive_agent(self, watchdog, agent_manager, bus, clock):
        orchestrator_id = await agent_manager.spawn_child_agent(None, "orchestrator")
        responder = HeartbeatResponder(orchestrator_id, bus, agent_manager).attach()
        clock.advance(10)

        try:
            results = await watchdog.check_critical_agents()
        finally:
            responder.detach()

        assert results == {orchestrator_id: True}
        assert (await agent_manager.get_agent(orchestrator_id)).last_heartbeat == clock.now()

    @pytest.mark.asyncio
    async def test_silent_root_triggers_emergency(self, watchdog, agent_manager, failure_handler, bus, recorder):
        bus.subscribe_type("emergency", recorder.handle)
        supervisor_id = await agent_manager.spawn_child_agent(None, "self-healing-agent")

        results = await watchdog.check_critical_agents()
        await bus.drain()

        assert results == {supervisor_id: False}
        emergency = recorder.of_type("emergency")
        assert len(emergency) == 1
        assert emergency[0].payload["type"] == "self-healing-agent-failure"
        assert emergency[0].payload["agent_id"] == supervisor_id

        failure = (await failure_handler.list_failures(agent_id=supervisor_id))[0]
        assert failure.detected_by == "watchdog"
        assert not failure.recovered
        assert (await agent_manager.get_agent(supervisor_id)).status == AgentStatus.ERROR

    @pytest.mark.asyncio
    async def test_silent_child_is_reset(self, watchdog, agent_manager, failure_handler, bus):
        parent = await agent_manager.spawn_child_agent(None, "orchestrator")
        responder = HeartbeatResponder(parent, bus, agent_manager).attach()
        supervisor_id = await agent_manager.spawn_child_agent(parent, "self-healing-agent")

        try:
            results = await watchdog.check_critical_agents()
        finally:
            responder.detach()

        assert results == {supervisor_id: False, parent: True}
        agent = await agent_manager.get_agent(supervisor_id)
        assert agent.status == AgentStatus.IDLE
        assert agent.health_score == 50
        failure = (await failure_handler.list_failures(agent_id=supervisor_id))[0]
        assert failure.recovery_method == RecoveryMethod.WATCHDOG

    @pytest.mark.asyncio
    async def test_stale_heartbeat_skips_ping(self, watchdog, agent_manager, failure_handler, bus, scheduler, clock):
        orchestrator_id = await agent_manager.spawn_child_agent(None, "orchestrator")
        responder = HeartbeatResponder(orchestrator_id, bus, agent_manager).attach()
        clock.advance(61)

        try:
            results = await watchdog.check_critical_agents()
        finally:
            responder.detach()

        assert results == {orchestrator_id: False}
        failure = (await failure_handler.list_failures(agent_id=orchestrator_id))[0]
        assert failure.failure_reason.startswith("heartbeat stale")

        await scheduler.run_due()
        assert (await failure_handler.get_failure(failure.id)).recovered

    @pytest.mark.asyncio
    async def test_low_health_is_unresponsive(self, watchdog, agent_manager):
        orchestrator_id = await agent_manager.spawn_child_agent(None, "orchestrator")
        await agent_manager.update_health_score(orchestrator_id, 10)

        assert await watchdog.check_critical_agents() == {orchestrator_id: False}

    @pytest.mark.asyncio
    async def test_register_critical_type(self, watchdog):
        watchdog.register_critical_type("web-agent")
        watchdog.register_critical_type("web-agent")

        assert [t.value for t in watchdog.critical_types] == ["self-healing-agent", "orchestrator", "web-agent"]


class TestSelfHealing:
    """Test process supervision through the circuit breaker."""

    @pytest.mark.asyncio
    async def test_open_circuit_suppresses_restarts(self, self_healing, scheduler):
        decisions = [await self_healing.handle_process_failure("api", "errored") for _ in range(3)]

        assert [d.action for d in decisions] == [FailureAction.RESTART] * 3
        state = self_healing.breaker.state("api")
        assert state.is_circuit_open
        assert state.consecutive_failures == 3
        assert len([j for j in scheduler.pending_jobs() if j.name == "restart_api"]) == 3

        fourth = await self_healing.handle_process_failure("api", "errored")

        assert fourth.action == FailureAction.SUPPRESSED
        assert len([j for j in scheduler.pending_jobs() if j.name == "restart_api"]) == 3

    @pytest.mark.asyncio
    async def test_scheduled_restart_runs_after_backoff(self, self_healing, process_manager, scheduler, clock):
        process_manager.set_status("api", "errored")

        await self_healing.handle_process_failure("api", "errored")
        assert await scheduler.run_due() == 0

        clock.advance(1)
        await scheduler.run_due()

        assert process_manager.restarts == ["api"]
        state = self_healing.breaker.state("api")
        assert state.restart_count == 1
        assert state.consecutive_failures == 0
        assert state.health_score == 100

    @pytest.mark.asyncio
    async def test_scheduled_restart_skipped_when_back_online(self, self_healing, process_manager, scheduler, clock):
        await self_healing.handle_process_failure("api", "errored")
        process_manager.set_status("api", "online")

        clock.advance(1)
        await scheduler.run_due()

        assert process_manager.restarts == []

    @pytest.mark.asyncio
    async def test_failed_restart_lowers_health(self, self_healing, process_manager):
        process_manager.fail_restart = True
        await self_healing.handle_process_failure("api", "errored")

        assert not await self_healing.restart_process("api")
        assert self_healing.breaker.state("api").health_score == 70

    @pytest.mark.asyncio
    async def test_check_all_processes(self, self_healing, process_manager):
        process_manager.set_status("api", "errored")
        process_manager.set_status("worker", "online")

        await self_healing.check_all_processes()

        status = self_healing.get_health_status()
        assert status["api"]["consecutive_failures"] == 1
        assert status["api"]["last_status"] == "errored"
        assert status["worker"]["health_score"] == 100
        assert status["worker"]["last_status"] == "online"

    @pytest.mark.asyncio
    async def test_exhausted_budget_broadcasts_emergency(self, self_healing, bus, recorder):
        bus.subscribe_type("emergency", recorder.handle)
        for _ in range(self_healing.breaker.max_restarts):
            await self_healing.restart_process("api")

        decision = await self_healing.handle_process_failure("api", "stopped")
        await bus.drain()

        assert decision.action == FailureAction.EXHAUSTED
        assert self_healing.get_health_status()["api"]["requires_manual_intervention"]
        assert recorder.of_type("emergency")[0].payload["type"] == "restart-budget-exhausted"

        self_healing.reset_circuit("api")
        assert not self_healing.get_health_status()["api"]["requires_manual_intervention"]

    @pytest.mark.asyncio
    async def test_stale_self_heartbeat_restarts_supervisor(self, self_healing, process_manager, clock):
        clock.advance(60)
        assert not await self_healing.check_self_heartbeat()

        clock.advance(31)
        assert await self_healing.check_self_heartbeat()
        assert process_manager.restarts == ["self-healing-agent"]

    @pytest.mark.asyncio
    async def test_self_restarts_honor_restart_budget(self, self_healing, process_manager, bus, recorder, clock):
        bus.subscribe_type("emergency", recorder.handle)

        for _ in range(self_healing.breaker.max_restarts):
            clock.advance(91)
            assert await self_healing.check_self_heartbeat()

        clock.advance(91)
        assert not await self_healing.check_self_heartbeat()
        clock.advance(91)
        assert not await self_healing.check_self_heartbeat()
        await bus.drain()

        assert process_manager.restarts == ["self-healing-agent"] * self_healing.breaker.max_restarts
        status = self_healing.get_health_status()["self-healing-agent"]
        assert status["requires_manual_intervention"] is True
        emergencies = recorder.of_type("emergency")
        assert len(emergencies) == 1
        assert emergencies[0].payload["process"] == "self-healing-agent"

    @pytest.mark.asyncio
    async def test_successful_pass_refreshes_self_heartbeat(self, self_healing, process_manager, clock):
        clock.advance(60)
        await self_healing.check_all_processes()
        clock.advance(60)

        assert not await self_healing.check_self_heartbeat()
        assert process_manager.restarts == []

    @pytest.mark.asyncio
    async def test_failed_listing_does_not_refresh_heartbeat(self, self_healing, process_manager, metrics, clock):
        process_manager.fail_list = True
        clock.advance(60)
        await self_healing.check_all_processes()
        clock.advance(40)

        assert metrics.get_counter("self_healing.list_failures") == 1
        assert await self_healing.check_self_heartbeat()

    @pytest.mark.asyncio
    async def test_periodic_jobs(self, self_healing, scheduler, process_manager, clock):
        process_manager.set_status("api", "errored")
        await self_healing.start()

        clock.advance(30)
        await scheduler.run_due()

        assert self_healing.breaker.state("api").consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_probe_health_endpoint(self, self_healing, agent_manager, task_queue, workload_monitor,
                                         failure_handler, clock):
        reporter = HealthReporter(agent_manager, task_queue, workload_monitor, failure_handler, clock=clock)

        async with TestServer(create_health_app(reporter)) as server:
            self_healing.health_url = str(server.make_url("/health"))
            assert await self_healing.probe_health_endpoint()

            self_healing.health_url = str(server.make_url("/nowhere"))
            assert not await self_healing.probe_health_endpoint()

    @pytest.mark.asyncio
    async def test_probe_unreachable_endpoint(self, self_healing, metrics):
        self_healing.health_url = "http://127.0.0.1:1/health"
        self_healing.health_timeout = 1.0

        assert not await self_healing.probe_health_endpoint()
        assert metrics.get_counter("self_healing.probe_failures") == 1
