"""
Tool Registry
-------------
Named, schema-validated tool definitions.

Rules:
- Names are unique and case-sensitive
- A registered tool is never overwritten; remove it first
- Lookups never raise
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging
import threading

import yaml

from ..core.errors import DuplicateToolError
from .schema import SchemaValidator, as_validator


def check_timeout(value: Optional[float], name: str = "timeout_seconds") -> Optional[float]:
    """Timeouts are None (no deadline) or a positive number of seconds."""
    if value is not None and value <= 0:
        raise ValueError(f"{name} must be positive, got {value!r}")
    return value


@dataclass
class ToolConfig:
    """Optional per-tool execution settings."""
    timeout_seconds: Optional[float] = None
    retry_count_on_stall: int = 0
    enable_cache: Optional[bool] = None
    cache_time_seconds: Optional[float] = None
    allowed_roles: Optional[Sequence[str]] = None

    def __post_init__(self):
        check_timeout(self.timeout_seconds)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ToolConfig":
        data = data or {}
        return cls(
            timeout_seconds=data.get("timeout_seconds", data.get("timeout")),
            retry_count_on_stall=int(data.get("retry_count_on_stall", 0)),
            enable_cache=data.get("enable_cache"),
            cache_time_seconds=data.get("cache_time_seconds"),
            allowed_roles=data.get("allowed_roles"),
        )


@dataclass
class Tool:
    """
    Tool definition with schema and handler.

    Each tool defines:
    - Name and description
    - Input schema (a SchemaValidator, pydantic model class or JSON Schema dict)
    - Handler called with the validated input, sync or async
    """
    name: str
    description: str
    schema: SchemaValidator
    handler: Callable[[Any], Any]
    config: ToolConfig = field(default_factory=ToolConfig)
    category: str = "general"

    def __post_init__(self):
        self.schema = as_validator(self.schema)
        if isinstance(self.config, dict):
            self.config = ToolConfig.from_dict(self.config)

    def __repr__(self) -> str:
        return f"Tool(name={self.name})"


def passthrough_handler(tool_name: str) -> Callable[[Any], Any]:
    """Handler for config-loaded tools with no business logic: echoes its input."""
    logger = logging.getLogger("localrpc.tools.passthrough")

    def handler(args: Any) -> Any:
        logger.info(f"Executing tool {tool_name} with input: {args}")
        return args

    return handler


def tool_from_definition(
    data: Dict[str, Any],
    handler_factory: Optional[Callable[[Dict[str, Any]], Callable[[Any], Any]]] = None,
) -> Tool:
    """Build a Tool from a config definition ({name, description, schema, config})."""
    if handler_factory is not None:
        handler = handler_factory(data)
    else:
        handler = passthrough_handler(data["name"])

    return Tool(
        name=data["name"],
        description=data.get("description", ""),
        schema=data["schema"],
        handler=handler,
        config=ToolConfig.from_dict(data.get("config")),
        category=data.get("category", "general"),
    )


class ToolRegistry:
    """
    Registry for all available tools.

    Writes are serialized; reads go straight to the dict so a lookup during
    a concurrent registration sees either the whole entry or nothing.
    """

    def __init__(self):
        self._tools: Dict[str, Tool] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger("localrpc.tools.registry")

    def register(self, tool: Tool) -> None:
        """Register a tool. Raises DuplicateToolError if the name is taken."""
        if not tool.name:
            raise ValueError("Tool name is required")
        if tool.schema is None or tool.handler is None:
            raise ValueError(f"Tool '{tool.name}' requires a schema and a handler")

        with self._lock:
            if tool.name in self._tools:
                raise DuplicateToolError(tool.name)
            self._tools[tool.name] = tool

        self._logger.info(f"Registered tool: {tool.name}")

    def get_tool(self, name: str) -> Optional[Tool]:
        """Get a tool by name."""
        return self._tools.get(name)

    def get_all_tools(self) -> List[Tool]:
        """Snapshot of all registered tools in registration order."""
        with self._lock:
            return list(self._tools.values())

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def remove_tool(self, name: str) -> bool:
        """Remove a tool. Returns whether it existed."""
        with self._lock:
            removed = self._tools.pop(name, None) is not None

        if removed:
            self._logger.info(f"Removed tool: {name}")
        return removed

    def list_by_category(self, category: str) -> List[Tool]:
        """List tools by category."""
        return [t for t in self.get_all_tools() if t.category == category]

    def load_from_file(
        self,
        path: str,
        handler_factory: Optional[Callable[[Dict[str, Any]], Callable[[Any], Any]]] = None,
    ) -> int:
        """
        Load tool definitions from a YAML (or JSON) file.
        Returns number of tools loaded.
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return self.load_definitions(data.get("tools", []), handler_factory)

    def load_definitions(
        self,
        definitions: List[Dict[str, Any]],
        handler_factory: Optional[Callable[[Dict[str, Any]], Callable[[Any], Any]]] = None,
        register: Optional[Callable[[Tool], None]] = None,
    ) -> int:
        """Register each valid definition. `register` defaults to this registry's."""
        register = register or self.register
        count = 0
        for tool_data in definitions:
            if not tool_data.get("name") or "schema" not in tool_data:
                self._logger.warning(f"Skipping invalid tool definition: {tool_data}")
                continue
            try:
                tool = tool_from_definition(tool_data, handler_factory)
                register(tool)
                count += 1
            except (ValueError, TypeError) as e:
                self._logger.error(f"Failed to load tool {tool_data.get('name')}: {e}")

        return count

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
