"""
Error Taxonomy
--------------
Typed failures raised by the tool invocation pipeline.

Every failure surfaced by the executor is a ToolExecutionError, so callers
have a single category to catch. Subclasses narrow down why a call failed.
None of them are retried automatically; the only retry in the pipeline is
the bounded stall retry driven by StallRetryPolicy.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional, Sequence
import random


class ErrorCategory(Enum):
    """Categories of errors for handling decisions."""
    NOT_FOUND = auto()          # Tool is not registered
    PERMISSION_ERROR = auto()   # Role not allowed
    VALIDATION_ERROR = auto()   # Input failed schema check
    TIMEOUT_ERROR = auto()      # Handler exceeded its deadline
    TOOL_FAILURE = auto()       # Handler raised


class DuplicateToolError(ValueError):
    """Raised when a tool name is registered twice."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool with name '{tool_name}' already registered")


class ToolExecutionError(Exception):
    """
    Base class for every failure of a tool invocation.

    Carries the tool name and, where there is one, the underlying cause.
    """
    category: ErrorCategory = ErrorCategory.TOOL_FAILURE

    def __init__(self, message: str, tool_name: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.tool_name = tool_name
        self.cause = cause

    @property
    def kind(self) -> str:
        """Short machine-readable name of the failure."""
        return self.category.name.lower()

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "tool_name": self.tool_name,
            "message": str(self),
        }


class ToolNotFoundError(ToolExecutionError):
    category = ErrorCategory.NOT_FOUND

    def __init__(self, tool_name: str):
        super().__init__(f"Tool '{tool_name}' not found", tool_name)


class AccessDeniedError(ToolExecutionError):
    """Role is not permitted to call the tool. Only role and tool are reported."""
    category = ErrorCategory.PERMISSION_ERROR

    def __init__(self, tool_name: str, role: str):
        role_value = getattr(role, "value", role)
        super().__init__(
            f"Access denied for tool '{tool_name}' with role '{role_value}'",
            tool_name,
        )
        self.role = role_value


class ToolValidationError(ToolExecutionError):
    """Input failed the tool's schema check."""
    category = ErrorCategory.VALIDATION_ERROR

    def __init__(
        self,
        tool_name: str,
        issues: Sequence[Any] = (),
        cause: Optional[BaseException] = None,
    ):
        self.issues = tuple(issues)
        detail = "; ".join(str(issue) for issue in self.issues) or "invalid input"
        super().__init__(
            f"Validation error for tool '{tool_name}': {detail}",
            tool_name,
            cause,
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["issues"] = [
            issue.to_dict() if hasattr(issue, "to_dict") else str(issue)
            for issue in self.issues
        ]
        return data


class ToolTimeoutError(ToolExecutionError):
    category = ErrorCategory.TIMEOUT_ERROR

    def __init__(self, tool_name: str, timeout_seconds: float, attempts: int = 1):
        self.timeout_seconds = timeout_seconds
        self.attempts = attempts
        message = f"Tool '{tool_name}' execution timed out after {self.timeout_ms:g}ms"
        if attempts > 1:
            message += f" ({attempts} attempts)"
        super().__init__(message, tool_name)

    @property
    def timeout_ms(self) -> float:
        return self.timeout_seconds * 1000


class ExecutionError(ToolExecutionError):
    """Any other failure raised by the handler."""
    category = ErrorCategory.TOOL_FAILURE

    def __init__(self, tool_name: str, cause: BaseException):
        super().__init__(
            f"Error executing tool '{tool_name}': {cause}",
            tool_name,
            cause,
        )


@dataclass
class StallRetryPolicy:
    """
    Backoff for retrying a handler that missed its deadline.

    delay = min(max_delay, base_delay * 2 ** (attempt - 1)) plus up to
    `jitter` fraction of that delay, chosen at random.
    """
    base_delay: float = 0.1
    max_delay: float = 2.0
    jitter: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        if self.jitter > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay
