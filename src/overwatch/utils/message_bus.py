"""
Agent message bus for Overwatch.

This module provides in-process messaging between components and agents:
- Direct, broadcast and type-based delivery
- Fire-and-forget publishing through a queue
- Request/response with correlation ids and timeouts
- Bounded message history

The bus is an ordinary object: construct one and pass it to every
component that needs it.
"""

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from .logging import get_logger


logger = get_logger("overwatch.message_bus")

BROADCAST = None
RESPONSE_SUFFIX = ":response"


@dataclass
class AgentMessage:
    """A message travelling over the bus."""
    sender: str
    recipient: Optional[str]
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    correlation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_broadcast(self) -> bool:
        return self.recipient is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.recipient,
            "type": self.type,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentMessage':
        return cls(
            sender=data["from"],
            recipient=data.get("to"),
            type=data["type"],
            payload=data.get("payload") or {},
            id=data.get("id") or f"msg_{uuid.uuid4().hex[:12]}",
            correlation_id=data.get("correlation_id"),
            timestamp=(
                datetime.fromisoformat(data["timestamp"])
                if data.get("timestamp") else datetime.now(timezone.utc)
            ),
        )


MessageHandler = Callable[[AgentMessage], Any]


@dataclass
class Subscription:
    """A handler registered for an agent id or a message type."""
    handler: MessageHandler
    agent_id: Optional[str] = None
    message_type: Optional[str] = None
    is_async: bool = True

    def matches(self, message: AgentMessage) -> bool:
        if self.message_type is not None:
            return message.type == self.message_type
        if self.agent_id is not None:
            return message.is_broadcast or message.recipient == self.agent_id
        return False


class MessageBus:
    """Queue-backed publish/subscribe bus."""

    def __init__(self, max_history: int = 1000, default_timeout: float = 5.0):
        self.default_timeout = default_timeout
        self._subscriptions: List[Subscription] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._processor_task: Optional[asyncio.Task] = None
        self._history: Deque[AgentMessage] = deque(maxlen=max(max_history, 0))
        self._pending_responses: Dict[str, asyncio.Future] = {}
        self._closed = False

    def subscribe(self, agent_id: str, handler: MessageHandler) -> Subscription:
        """Receive messages addressed to ``agent_id`` and all broadcasts."""
        return self._add(Subscription(
            handler=handler,
            agent_id=agent_id,
            is_async=asyncio.iscoroutinefunction(handler),
        ))

    def subscribe_type(self, message_type: str, handler: MessageHandler) -> Subscription:
        """Receive every message of ``message_type`` regardless of recipient."""
        return self._add(Subscription(
            handler=handler,
            message_type=message_type,
            is_async=asyncio.iscoroutinefunction(handler),
        ))

    def unsubscribe(self, subscription: Subscription) -> bool:
        try:
            self._subscriptions.remove(subscription)
            return True
        except ValueError:
            return False

    def publish(
        self,
        sender: str,
        recipient: Optional[str],
        message_type: str,
        payload: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None
    ) -> AgentMessage:
        """
        Queue a message for delivery and return immediately.

        Args:
            sender: Sending agent or component id
            recipient: Target agent id, or None to broadcast
            message_type: Message type
            payload: Message body
            correlation_id: Links a response to its request
        """
        message = AgentMessage(
            sender=sender,
            recipient=recipient,
            type=message_type,
            payload=payload or {},
            correlation_id=correlation_id,
        )

        if self._closed:
            logger.warning("publish_after_shutdown", message_type=message_type)
            return message

        self._add_to_history(message)
        self._resolve_response(message)
        self._queue.put_nowait(message)
        self._ensure_processor()

        logger.debug(
            "message_published",
            message_id=message.id,
            message_type=message_type,
            sender=sender,
            recipient=recipient,
            queue_size=self._queue.qsize()
        )
        return message

    def broadcast(self, sender: str, message_type: str, payload: Optional[Dict[str, Any]] = None) -> AgentMessage:
        return self.publish(sender, BROADCAST, message_type, payload)

    async def request_response(
        self,
        sender: str,
        recipient: str,
        message_type: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Optional[AgentMessage]:
        """
        Send a request and wait for ``<type>:response`` from the recipient.

        Returns:
            The response message, or None when nothing arrived in time
        """
        correlation_id = f"req_{uuid.uuid4().hex[:12]}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_responses[correlation_id] = future

        self.publish(sender, recipient, message_type, payload, correlation_id=correlation_id)

        try:
            return await asyncio.wait_for(
                future,
                timeout=self.default_timeout if timeout is None else timeout
            )
        except asyncio.TimeoutError:
            logger.debug(
                "request_timed_out",
                message_type=message_type,
                sender=sender,
                recipient=recipient
            )
            return None
        finally:
            self._pending_responses.pop(correlation_id, None)

    def respond(self, request: AgentMessage, sender: str, payload: Optional[Dict[str, Any]] = None) -> AgentMessage:
        """Answer a request received through ``request_response``."""
        return self.publish(
            sender,
            request.sender,
            f"{request.type}{RESPONSE_SUFFIX}",
            payload,
            correlation_id=request.correlation_id
        )

    def get_history(
        self,
        message_type: Optional[str] = None,
        recipient: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[AgentMessage]:
        messages = list(self._history)
        if message_type:
            messages = [m for m in messages if m.type == message_type]
        if recipient:
            messages = [m for m in messages if m.recipient == recipient]
        if limit:
            messages = messages[-limit:]
        return list(messages)

    async def drain(self) -> None:
        """Wait until every queued message has been delivered."""
        await self._queue.join()

    async def shutdown(self) -> None:
        self._closed = True
        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None

        for future in self._pending_responses.values():
            if not future.done():
                future.cancel()
        self._pending_responses.clear()
        self._subscriptions.clear()
        logger.info("message_bus_shutdown")

    def _add(self, subscription: Subscription) -> Subscription:
        self._subscriptions.append(subscription)
        logger.debug(
            "subscription_added",
            agent_id=subscription.agent_id,
            message_type=subscription.message_type,
            handler=getattr(subscription.handler, '__name__', str(subscription.handler))
        )
        return subscription

    def _ensure_processor(self) -> None:
        if self._processor_task is None or self._processor_task.done():
            self._processor_task = asyncio.create_task(self._process_messages())

    def _resolve_response(self, message: AgentMessage) -> None:
        if not message.correlation_id or not message.type.endswith(RESPONSE_SUFFIX):
            return
        future = self._pending_responses.get(message.correlation_id)
        if future is not None and not future.done():
            future.set_result(message)

    async def _process_messages(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._dispatch(message)
            except Exception as e:
                logger.error("message_processing_error", error=str(e), exc_info=True)
            finally:
                self._queue.task_done()

    async def _dispatch(self, message: AgentMessage) -> None:
        subscriptions = [s for s in self._subscriptions if s.matches(message)]
        if not subscriptions:
            return

        tasks = []
        for subscription in subscriptions:
            if subscription.is_async:
                tasks.append(asyncio.create_task(
                    self._call_async_handler(subscription.handler, message)
                ))
            else:
                self._call_sync_handler(subscription.handler, message)

        if tasks:
            await asyncio.gather(*tasks)

    async def _call_async_handler(self, handler: MessageHandler, message: AgentMessage) -> None:
        try:
            await handler(message)
        except Exception as e:
            logger.error(
                "async_handler_error",
                handler=getattr(handler, '__name__', 'unknown'),
                message_type=message.type,
                error=str(e),
                exc_info=True
            )

    def _call_sync_handler(self, handler: MessageHandler, message: AgentMessage) -> None:
        try:
            handler(message)
        except Exception as e:
            logger.error(
                "sync_handler_error",
                handler=getattr(handler, '__name__', 'unknown'),
                message_type=message.type,
                error=str(e),
                exc_info=True
            )

    def _add_to_history(self, message: AgentMessage) -> None:
        self._history.append(message)


__all__ = [
    'AgentMessage',
    'MessageBus',
    'Subscription',
    'BROADCAST',
    'RESPONSE_SUFFIX',
]
