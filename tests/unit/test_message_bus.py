"""
Unit tests for the MessageBus.
"""

import pytest

from overwatch.utils.message_bus import AgentMessage, MessageBus


class TestMessageBus:
    """Test publish/subscribe and request/response."""

    @pytest.mark.asyncio
    async def test_direct_message_reaches_recipient_only(self, bus, recorder):
        other = []
        bus.subscribe("agent-a", recorder.handle)
        bus.subscribe("agent-b", lambda m: other.append(m))

        bus.publish("tester", "agent-a", "ping", {"n": 1})
        await bus.drain()

        assert [m.type for m in recorder.messages] == ["ping"]
        assert recorder.messages[0].payload == {"n": 1}
        assert other == []

    @pytest.mark.asyncio
    async def test_broadcast_reaches_everyone(self, bus, recorder):
        other = []
        bus.subscribe("agent-a", recorder.handle)
        bus.subscribe("agent-b", lambda m: other.append(m))

        message = bus.broadcast("tester", "emergency", {"type": "test"})
        await bus.drain()

        assert message.is_broadcast
        assert len(recorder.messages) == 1
        assert len(other) == 1

    @pytest.mark.asyncio
    async def test_subscribe_type(self, bus, recorder):
        bus.subscribe_type("agent_heartbeat", recorder.handle)

        bus.publish("agent-a", "agent-b", "agent_heartbeat", {"agent_id": "agent-a"})
        bus.publish("agent-a", "agent-b", "something_else")
        await bus.drain()

        assert [m.type for m in recorder.messages] == ["agent_heartbeat"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus, recorder):
        subscription = bus.subscribe("agent-a", recorder.handle)

        assert bus.unsubscribe(subscription) is True
        assert bus.unsubscribe(subscription) is False

        bus.publish("tester", "agent-a", "ping")
        await bus.drain()
        assert recorder.messages == []

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_reach_publisher(self, bus, recorder):
        async def broken(message: AgentMessage) -> None:
            raise RuntimeError("handler failure")

        bus.subscribe("agent-a", broken)
        bus.subscribe("agent-a", recorder.handle)

        bus.publish("tester", "agent-a", "ping")
        await bus.drain()

        assert len(recorder.messages) == 1

    @pytest.mark.asyncio
    async def test_request_response(self, bus):
        async def responder(message: AgentMessage) -> None:
            if message.type == "health_check":
                bus.respond(message, "agent-a", {"status": "ok"})

        bus.subscribe("agent-a", responder)

        reply = await bus.request_response("watchdog", "agent-a", "health_check", timeout=1.0)

        assert reply is not None
        assert reply.type == "health_check:response"
        assert reply.sender == "agent-a"
        assert reply.payload == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_request_times_out_with_none(self, bus):
        reply = await bus.request_response("watchdog", "nobody", "health_check", timeout=0.05)

        assert reply is None

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        bus = MessageBus(max_history=3)
        try:
            for i in range(5):
                bus.publish("tester", None, "tick", {"i": i})
            await bus.drain()

            history = bus.get_history(message_type="tick")
            assert [m.payload["i"] for m in history] == [2, 3, 4]
            assert len(bus.get_history(limit=1)) == 1
        finally:
            await bus.shutdown()

    @pytest.mark.asyncio
    async def test_zero_history_keeps_nothing(self, recorder):
        bus = MessageBus(max_history=0)
        bus.subscribe("listener", recorder.handle)
        try:
            for i in range(5):
                bus.publish("tester", None, "tick", {"i": i})
            await bus.drain()

            assert len(recorder.of_type("tick")) == 5
            assert bus.get_history() == []
        finally:
            await bus.shutdown()

