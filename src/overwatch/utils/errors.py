"""
Error handling framework for Overwatch.

This module provides:
- Hierarchical exception classes with codes and categories
- Error context preservation
- Structured error responses
- Retry with exponential backoff
"""

from typing import Optional, Dict, Any, List, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager
import asyncio
import traceback

from .logging import get_logger


logger = get_logger("overwatch.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    SYSTEM = "system"
    DATABASE = "database"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    AGENT = "agent"
    TASK = "task"
    PROCESS = "process"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


class OverwatchError(Exception):
    """Base exception for all Overwatch errors."""

    code: str = "OVERWATCH_ERROR"
    default_message: str = "An error occurred in Overwatch"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.kwargs = kwargs

        if not self.context.stack_trace and cause is not None:
            self.context.stack_trace = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
                "details": {k: str(v) for k, v in self.kwargs.items()},
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata,
                }
            }
        }


class ConfigurationError(OverwatchError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Verify every registry key names a known agent type",
        ]


class DatabaseError(OverwatchError):
    """Database-related errors."""
    code = "DATABASE_ERROR"
    default_message = "Database error occurred"
    category = ErrorCategory.DATABASE


class ValidationError(OverwatchError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        super().__init__(f"Validation failed for field '{field}': {constraint}", **kwargs)


# Agent errors

class UnknownAgentTypeError(OverwatchError):
    """Raised when an agent type is not present in the capability registry."""
    code = "UNKNOWN_AGENT_TYPE"
    default_message = "Unknown agent type"
    category = ErrorCategory.AGENT
    severity = ErrorSeverity.WARNING

    def __init__(self, agent_type: Any, **kwargs):
        self.agent_type = agent_type
        super().__init__(f"Unknown agent type: {agent_type}", **kwargs)


class AgentNotFoundError(OverwatchError):
    """Raised when an agent id does not exist."""
    code = "AGENT_NOT_FOUND"
    default_message = "Agent not found"
    category = ErrorCategory.AGENT
    severity = ErrorSeverity.WARNING

    def __init__(self, agent_id: str, **kwargs):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}", **kwargs)


class InvalidAgentTransitionError(OverwatchError):
    """Raised when an agent status change is not allowed."""
    code = "INVALID_AGENT_TRANSITION"
    default_message = "Invalid agent status transition"
    category = ErrorCategory.AGENT


class AgentCapacityError(OverwatchError):
    """Raised when an agent cannot take another task."""
    code = "AGENT_AT_CAPACITY"
    default_message = "Agent has no free capacity"
    category = ErrorCategory.AGENT
    severity = ErrorSeverity.WARNING
    is_retryable = True

    def __init__(self, agent_id: str, **kwargs):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} is unavailable or at capacity", **kwargs)


# Task errors

class TaskNotFoundError(OverwatchError):
    """Raised when a task id does not exist."""
    code = "TASK_NOT_FOUND"
    default_message = "Task not found"
    category = ErrorCategory.TASK
    severity = ErrorSeverity.WARNING

    def __init__(self, task_id: str, **kwargs):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}", **kwargs)


class InvalidTaskTransitionError(OverwatchError):
    """Raised when a task status change is not allowed."""
    code = "INVALID_TASK_TRANSITION"
    default_message = "Invalid task status transition"
    category = ErrorCategory.TASK

    def __init__(self, task_id: str, current: str, target: str, **kwargs):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(
            f"Task {task_id} cannot move from {current} to {target}", **kwargs
        )


# Process errors

class ProcessManagerError(OverwatchError):
    """Raised when the external process manager fails."""
    code = "PROCESS_MANAGER_ERROR"
    default_message = "Process manager command failed"
    category = ErrorCategory.PROCESS
    is_retryable = True


@contextmanager
def error_context(component: str, operation: str, **metadata):
    """
    Attach component/operation context to errors raised in the block.

    Overwatch errors are annotated and re-raised; anything else is wrapped
    in an OverwatchError.
    """
    context = ErrorContext(
        component=component,
        operation=operation,
        metadata=metadata
    )

    try:
        yield context
    except OverwatchError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        raise
    except Exception as e:
        logger.error(
            "unexpected_error_in_context",
            component=component,
            operation=operation,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True
        )
        raise OverwatchError(message=str(e), context=context, cause=e) from e


class ErrorRecovery:
    """Error recovery strategies."""

    @staticmethod
    async def exponential_backoff(
        func: Callable,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exceptions: tuple = (Exception,)
    ) -> Any:
        """Retry an async callable with exponential backoff."""
        last_exception = None

        for attempt in range(max_retries):
            try:
                return await func()
            except exceptions as e:
                last_exception = e
                if attempt < max_retries - 1:
                    delay = min(base_delay * (2 ** attempt), max_delay)
                    logger.warning(
                        "retrying_after_error",
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e)
                    )
                    await asyncio.sleep(delay)

        logger.error("max_retries_exceeded", attempts=max_retries, error=str(last_exception))
        raise last_exception


__all__ = [
    'OverwatchError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'DatabaseError',
    'ValidationError',
    'UnknownAgentTypeError',
    'AgentNotFoundError',
    'InvalidAgentTransitionError',
    'AgentCapacityError',
    'TaskNotFoundError',
    'InvalidTaskTransitionError',
    'ProcessManagerError',
    'error_context',
    'ErrorRecovery',
]
