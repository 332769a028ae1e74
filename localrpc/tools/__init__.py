# Tools module - Tool registry, input schemas and execution
# Each tool: name, schema, handler, optional per-tool config

from .schema import ToolSchema, ToolParameter, ParameterType, PydanticSchema, JsonSchemaValidator, ValidationOutcome, ValidationIssue
from .registry import ToolRegistry, Tool, ToolConfig
from .executor import ToolExecutor, ToolExecutionResult, ExecuteOptions

__all__ = [
    "ToolRegistry",
    "Tool",
    "ToolConfig",
    "ToolSchema",
    "ToolParameter",
    "ParameterType",
    "PydanticSchema",
    "JsonSchemaValidator",
    "ValidationOutcome",
    "ValidationIssue",
    "ToolExecutor",
    "ToolExecutionResult",
    "ExecuteOptions",
]
