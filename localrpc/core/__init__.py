# Core module - pipeline facade and error taxonomy
# Every invocation goes through ToolPipeline.execute_tool

from .errors import (
    ErrorCategory, ToolExecutionError, ToolNotFoundError, AccessDeniedError,
    ToolValidationError, ToolTimeoutError, ExecutionError, DuplicateToolError,
    StallRetryPolicy,
)
from .pipeline import ToolPipeline, PipelineConfig, EventType

__all__ = [
    "ToolPipeline", "PipelineConfig", "EventType",
    "ErrorCategory", "ToolExecutionError", "ToolNotFoundError", "AccessDeniedError",
    "ToolValidationError", "ToolTimeoutError", "ExecutionError", "DuplicateToolError",
    "StallRetryPolicy",
]
