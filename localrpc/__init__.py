# localrpc - local tool invocation pipeline
# Register tools with a schema and handler, execute them by name under
# validation, access control, deadlines, caching and metrics.

from .core.errors import (
    AccessDeniedError,
    DuplicateToolError,
    ExecutionError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    ToolValidationError,
)
from .core.pipeline import EventType, PipelineConfig, ToolPipeline
from .security.access_control import AccessControlService, UserRole
from .tools.executor import ExecuteOptions, ToolExecutionResult, ToolExecutor
from .tools.registry import Tool, ToolConfig, ToolRegistry
from .tools.schema import JsonSchemaValidator, ToolParameter, ToolSchema, ValidationIssue, ValidationOutcome

__version__ = "0.1.0"

__all__ = [
    "ToolPipeline", "PipelineConfig", "EventType",
    "Tool", "ToolConfig", "ToolRegistry",
    "ToolExecutor", "ExecuteOptions", "ToolExecutionResult",
    "ToolSchema", "ToolParameter", "JsonSchemaValidator", "ValidationIssue", "ValidationOutcome",
    "AccessControlService", "UserRole",
    "ToolExecutionError", "ToolNotFoundError", "AccessDeniedError",
    "ToolValidationError", "ToolTimeoutError", "ExecutionError", "DuplicateToolError",
]
