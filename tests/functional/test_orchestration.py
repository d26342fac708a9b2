"""
Functional tests for routing, decomposition and workload delegation.
"""

import pytest

from overwatch.managers.base import ManagerNotReadyError
from overwatch.models.agent import AgentStatus, AgentType
from overwatch.models.task import TaskPriority, TaskStatus
from overwatch.orchestration.orchestrator import Orchestrator, chunk_content, route_for
from overwatch.utils.errors import UnknownAgentTypeError, ValidationError


pytestmark = pytest.mark.functional


class TestRouting:
    """Test delegation of single messages."""

    def test_route_table(self):
        assert route_for("search").agent_type == AgentType.WEB
        assert route_for("music").agent_type == AgentType.SPOTIFY
        assert route_for("something-new").agent_type == AgentType.DIALOGUE

    @pytest.mark.asyncio
    async def test_full_agent_is_never_reused(self, orchestrator, agent_manager):
        first = await orchestrator.route_message({"type": "conversation", "content": "hello"})
        second = await orchestrator.route_message({"type": "conversation", "content": "and again"})

        assert first.status == second.status == "delegated"
        assert first.agent == second.agent == "dialogue-agent"
        assert first.agent_id != second.agent_id

        for agent_id in (first.agent_id, second.agent_id):
            agent = await agent_manager.get_agent(agent_id)
            assert agent.current_workload == 1
            assert agent.parent_id == orchestrator.agent_id

    @pytest.mark.asyncio
    async def test_available_agent_is_preferred(self, orchestrator, agent_manager):
        existing = await agent_manager.spawn_child_agent(None, "web-agent")

        result = await orchestrator.route_message({"type": "search", "content": "weather"})

        assert result.agent_id == existing
        assert len(await agent_manager.list_agents(agent_type="web-agent")) == 1

    @pytest.mark.asyncio
    async def test_queued_when_no_agent_can_be_spawned(self, orchestrator, workload_monitor, task_queue, monkeypatch):
        async def refuse(parent_id, agent_type):
            raise UnknownAgentTypeError(agent_type)

        monkeypatch.setattr(workload_monitor, "spawn_delegate", refuse)

        result = await orchestrator.route_message({"type": "music", "content": "play jazz"})

        assert result.status == "queued"
        assert result.agent == "spotify-agent"
        assert result.agent_id is None
        assert (await task_queue.get_task(result.task_id)).status == TaskStatus.PENDING

        monkeypatch.undo()
        assert await orchestrator.dispatch_pending() == 1
        assert (await task_queue.get_task(result.task_id)).status == TaskStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_dispatch_prefers_previous_agent(self, orchestrator, agent_manager, task_queue):
        previous = await agent_manager.spawn_child_agent(None, "web-agent")
        other = await agent_manager.spawn_child_agent(None, "web-agent")
        await agent_manager.update_health_score(previous, 80)

        task_id = await task_queue.create_task("search", {"content": "news"})
        await task_queue.assign_task(task_id, previous)
        await task_queue.complete_task(task_id, success=False, error="timeout")
        await task_queue.retry_task(task_id)

        assert [a.id for a in await agent_manager.find_available_agents(["web_search"])][0] == other
        assert await orchestrator.dispatch_pending() == 1
        assert (await task_queue.get_task(task_id)).assigned_agent_id == previous

    @pytest.mark.asyncio
    async def test_route_requires_initialized_orchestrator(self, store, scheduler, bus, agent_manager,
                                                            task_queue, workload_monitor):
        fresh = Orchestrator(store, scheduler, bus, agent_manager, task_queue, workload_monitor)

        with pytest.raises(ManagerNotReadyError):
            await fresh.route_message({"type": "conversation", "content": "hi"})

    @pytest.mark.asyncio
    async def test_unknown_priority_is_rejected_before_any_task(self, orchestrator, task_queue):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.route_message({"type": "search", "content": "weather", "priority": "urgent"})
        assert exc_info.value.field == "priority"

        with pytest.raises(ValidationError):
            await orchestrator.route_message({"type": "complex_query", "content": "plan", "priority": "asap"})

        assert await task_queue.get_tasks() == []

    @pytest.mark.asyncio
    async def test_priority_is_applied(self, orchestrator, task_queue):
        result = await orchestrator.route_message({"type": "search", "content": "weather", "priority": "critical"})

        assert (await task_queue.get_task(result.task_id)).priority == TaskPriority.CRITICAL


class TestDecomposition:
    """Test splitting of complex messages into subtasks."""

    def test_chunk_content(self):
        assert chunk_content("aaaa bbbb cccc", 9) == ["aaaa bbbb", "cccc"]
        assert chunk_content("abcdefghij", 4) == ["abcd", "efgh", "ij"]
        assert chunk_content("   ", 4) == []

    @pytest.mark.asyncio
    async def test_complex_query(self, orchestrator, task_queue):
        result = await orchestrator.route_message({"type": "complex_query", "content": "plan my trip"})

        assert result.status == "decomposed"
        assert result.agent == "orchestrator"
        assert result.agent_id == orchestrator.agent_id
        assert len(result.subtask_ids) == 2

        parent = await task_queue.get_task(result.task_id)
        assert parent.status == TaskStatus.IN_PROGRESS
        assert parent.payload["subtask_count"] == 2

        subtasks = [await task_queue.get_task(task_id) for task_id in result.subtask_ids]
        assert [t.type for t in subtasks] == ["conversation", "search"]
        assert all(t.status == TaskStatus.ASSIGNED for t in subtasks)
        assert all(t.parent_task_id == result.task_id for t in subtasks)

    @pytest.mark.asyncio
    async def test_multi_step_with_explicit_steps(self, orchestrator, task_queue):
        result = await orchestrator.route_message({
            "type": "multi_step",
            "content": "",
            "steps": [
                {"type": "search", "content": "find a venue"},
                {"type": "music", "content": "queue a playlist"},
            ],
        })

        subtasks = [await task_queue.get_task(task_id) for task_id in result.subtask_ids]
        assert [t.type for t in subtasks] == ["search", "music"]
        assert subtasks[1].payload == {"content": "queue a playlist"}

    @pytest.mark.asyncio
    async def test_multi_step_from_lines(self, orchestrator):
        result = await orchestrator.route_message({
            "type": "multi_step",
            "content": "first thing\n\nsecond thing\n",
        })

        assert len(result.subtask_ids) == 2

    @pytest.mark.asyncio
    async def test_batch_operation_spreads_over_agents(self, orchestrator, task_queue):
        result = await orchestrator.route_message({
            "type": "batch_operation",
            "operation": "search",
            "items": ["a", "b", "c"],
        })

        subtasks = [await task_queue.get_task(task_id) for task_id in result.subtask_ids]
        assert [t.payload["item"] for t in subtasks] == ["a", "b", "c"]
        # web agents take two tasks each
        assert len({t.assigned_agent_id for t in subtasks}) == 2

    @pytest.mark.asyncio
    async def test_oversized_content_is_chunked(self, orchestrator, task_queue):
        content = " ".join(["word"] * 300)

        result = await orchestrator.route_message({"type": "conversation", "content": content})

        assert result.status == "decomposed"
        subtasks = [await task_queue.get_task(task_id) for task_id in result.subtask_ids]
        assert [t.payload["chunk_index"] for t in subtasks] == [0, 1]
        assert all(len(t.payload["content"]) <= orchestrator.content_threshold for t in subtasks)

    @pytest.mark.asyncio
    async def test_parent_completes_with_its_subtasks(self, orchestrator, task_queue):
        result = await orchestrator.route_message({"type": "complex_query", "content": "compare prices"})

        for task_id in result.subtask_ids:
            await task_queue.start_task(task_id)
            await task_queue.complete_task(task_id, success=True)

        assert (await task_queue.get_task(result.task_id)).status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_dispatch_skips_decomposed_parents(self, orchestrator):
        await orchestrator.route_message({"type": "complex_query", "content": "anything"})

        assert await orchestrator.dispatch_pending() == 0


class TestWorkloadDelegation:
    """Test relief of overloaded agents."""

    async def _overload(self, task_queue, agent_id):
        """Fill ``agent_id`` and leave one pending task with affinity to it."""
        queued = await task_queue.create_task("search")
        await task_queue.assign_task(queued, agent_id)
        await task_queue.complete_task(queued, success=False, error="busy")
        await task_queue.retry_task(queued)

        for _ in range(2):
            await task_queue.assign_task(await task_queue.create_task("search"), agent_id)
        return queued

    @pytest.mark.asyncio
    async def test_delegates_to_peer(self, workload_monitor, agent_manager, task_queue, metrics):
        loaded = await agent_manager.spawn_child_agent(None, "web-agent")
        peer = await agent_manager.spawn_child_agent(None, "web-agent")
        queued = await self._overload(task_queue, loaded)

        await workload_monitor.check_workloads()

        task = await task_queue.get_task(queued)
        assert task.status == TaskStatus.ASSIGNED
        assert task.assigned_agent_id == peer
        assert metrics.get_counter("workload.delegations") == 1

    @pytest.mark.asyncio
    async def test_spawns_sibling_without_peers(self, workload_monitor, agent_manager, task_queue):
        parent = await agent_manager.spawn_child_agent(None, "orchestrator")
        loaded = await agent_manager.spawn_child_agent(parent, "web-agent")
        queued = await self._overload(task_queue, loaded)

        delegated = await workload_monitor.handle_critical_workload(await agent_manager.get_agent(loaded))

        assert delegated == [queued]
        helper = (await task_queue.get_task(queued)).assigned_agent_id
        assert helper != loaded
        assert (await agent_manager.get_agent(helper)).parent_id == parent

    @pytest.mark.asyncio
    async def test_root_without_peers_keeps_its_work(self, workload_monitor, agent_manager, task_queue):
        loaded = await agent_manager.spawn_child_agent(None, "web-agent")
        queued = await self._overload(task_queue, loaded)

        delegated = await workload_monitor.handle_critical_workload(await agent_manager.get_agent(loaded))

        assert delegated == []
        assert (await task_queue.get_task(queued)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_stats(self, workload_monitor, agent_manager, task_queue):
        busy = await agent_manager.spawn_child_agent(None, "web-agent")
        await agent_manager.spawn_child_agent(None, "web-agent")
        for _ in range(2):
            await task_queue.assign_task(await task_queue.create_task("search"), busy)

        stats = await workload_monitor.get_workload_stats()

        assert stats["total_agents"] == 2
        assert stats["busy_agents"] == 1
        assert stats["idle_agents"] == 1
        assert stats["critical_workload_agents"] == 1
        assert stats["average_workload"] == 50.0
        assert stats["total_capacity"] == 4
        assert stats["total_used"] == 2

    @pytest.mark.asyncio
    async def test_thresholds_are_validated(self, workload_monitor):
        with pytest.raises(ValidationError):
            workload_monitor.set_thresholds(90, 80)
        with pytest.raises(ValidationError):
            workload_monitor.set_thresholds(150, 200)

        workload_monitor.set_thresholds(-5, 50)
        assert (workload_monitor.high_threshold, workload_monitor.critical_threshold) == (0.0, 50.0)

    @pytest.mark.asyncio
    async def test_scheduled_check_runs_on_interval(self, workload_monitor, agent_manager, scheduler, clock):
        agent_id = await agent_manager.spawn_child_agent(None, "web-agent")
        await workload_monitor.start()

        clock.advance(workload_monitor.check_interval)
        assert await scheduler.run_due() == 1
        assert (await agent_manager.get_agent(agent_id)).status == AgentStatus.IDLE
