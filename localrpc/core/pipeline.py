"""
Tool Pipeline
-------------
The composition root: registry + executor + lifecycle events.

Every collaborator (registry, access control, cache, metrics) is built per
pipeline or injected, so two pipelines never share state.

Events, delivered synchronously in listener-registration order:
- tool_registered           {tool_name}
- tool_execution_started    {tool_name, input}
- tool_execution_completed  {tool_name, result, execution_time_ms}
- tool_execution_failed     {tool_name, error}

A failing call emits exactly one tool_execution_failed and then raises the
same error; consumers should count it once.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging

import yaml

from ..infra.cache import ToolCache
from ..infra.metrics import PerformanceMonitor
from ..security.access_control import AccessControlService, UserRole
from ..tools.executor import ExecuteOptions, ToolExecutionResult, ToolExecutor
from ..tools.registry import Tool, ToolRegistry, check_timeout
from .errors import ToolExecutionError


class EventType(str, Enum):
    """Pipeline lifecycle events."""
    TOOL_REGISTERED = "tool_registered"
    TOOL_EXECUTION_STARTED = "tool_execution_started"
    TOOL_EXECUTION_COMPLETED = "tool_execution_completed"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"


EventListener = Callable[[EventType, Dict[str, Any]], None]


@dataclass
class PipelineConfig:
    """Process-wide defaults applied by the pipeline."""
    default_timeout_seconds: Optional[float] = None
    cache_max_entries: int = 1000
    cache_cleanup_interval_seconds: Optional[float] = 300.0
    metrics_limit: int = 1000
    default_allowed_roles: Sequence[str] = field(
        default_factory=lambda: [UserRole.ADMIN.value, UserRole.USER.value]
    )

    def __post_init__(self):
        check_timeout(self.default_timeout_seconds, "default_timeout_seconds")


class ToolPipeline:
    """
    Facade over the tool registry and executor.

    Usage:
        pipeline = ToolPipeline(PipelineConfig(default_timeout_seconds=30))
        pipeline.register(Tool(name="echo", ...))
        result = await pipeline.execute_tool("echo", {"message": "hi"})
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        registry: Optional[ToolRegistry] = None,
        access_control: Optional[AccessControlService] = None,
        cache: Optional[ToolCache] = None,
        monitor: Optional[PerformanceMonitor] = None,
        executor: Optional[ToolExecutor] = None,
    ):
        self.config = config or PipelineConfig()

        if executor is not None:
            if registry is not None and registry is not executor.registry:
                raise ValueError("registry must be the injected executor's registry")
            if any(c is not None for c in (access_control, cache, monitor)):
                raise ValueError("pass access_control, cache and monitor to the executor, not alongside it")
            self._registry = executor.registry
            self._executor = executor
        else:
            self._registry = registry if registry is not None else ToolRegistry()
            if access_control is None:
                access_control = AccessControlService(self.config.default_allowed_roles)
            if cache is None:
                cache = ToolCache(
                    max_entries=self.config.cache_max_entries,
                    cleanup_interval_seconds=self.config.cache_cleanup_interval_seconds,
                )
            if monitor is None:
                monitor = PerformanceMonitor(self.config.metrics_limit)
            self._executor = ToolExecutor(
                self._registry,
                access_control=access_control,
                cache=cache,
                monitor=monitor,
                default_timeout_seconds=self.config.default_timeout_seconds,
            )

        self._listeners: List[EventListener] = []
        self._logger = logging.getLogger("localrpc.core.pipeline")

    # Collaborators

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def executor(self) -> ToolExecutor:
        return self._executor

    @property
    def access_control(self) -> AccessControlService:
        return self._executor.access_control

    @property
    def cache(self) -> ToolCache:
        return self._executor.cache

    @property
    def monitor(self) -> PerformanceMonitor:
        return self._executor.monitor

    # Tools

    def register(self, tool: Tool) -> None:
        """Register a tool and announce it. Raises DuplicateToolError."""
        self._registry.register(tool)

        if tool.config.allowed_roles is not None:
            self.access_control.add_policy(tool.name, tool.config.allowed_roles)

        self._emit_event(EventType.TOOL_REGISTERED, {"tool_name": tool.name})

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._registry.get_tool(name)

    def get_all_tools(self) -> List[Tool]:
        return self._registry.get_all_tools()

    def has_tool(self, name: str) -> bool:
        return self._registry.has_tool(name)

    def remove_tool(self, name: str) -> bool:
        removed = self._registry.remove_tool(name)
        if removed:
            self.access_control.remove_policy(name)
        return removed

    def load_definitions(
        self,
        definitions: List[Dict[str, Any]],
        handler_factory: Optional[Callable[[Dict[str, Any]], Callable[[Any], Any]]] = None,
    ) -> int:
        """Register tool definitions through the pipeline so policies and events apply."""
        return self._registry.load_definitions(definitions, handler_factory, register=self.register)

    def load_from_file(
        self,
        path: str,
        handler_factory: Optional[Callable[[Dict[str, Any]], Callable[[Any], Any]]] = None,
    ) -> int:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return self.load_definitions(data.get("tools", []), handler_factory)

    async def execute_tool(
        self,
        tool_name: str,
        tool_input: Any,
        options: Optional[ExecuteOptions] = None,
    ) -> ToolExecutionResult:
        """
        Execute a tool, emitting started/completed/failed events around it.

        The pipeline's default timeout applies only when neither the call nor
        the tool sets one.
        """
        self._emit_event(EventType.TOOL_EXECUTION_STARTED, {
            "tool_name": tool_name,
            "input": tool_input,
        })

        try:
            result = await self._executor.execute_tool(tool_name, tool_input, options)
        except ToolExecutionError as error:
            self._emit_event(EventType.TOOL_EXECUTION_FAILED, {
                "tool_name": tool_name,
                "error": error,
            })
            raise

        self._emit_event(EventType.TOOL_EXECUTION_COMPLETED, {
            "tool_name": tool_name,
            "result": result.result,
            "execution_time_ms": result.execution_time_ms,
        })
        return result

    async def execute_as(
        self,
        role: str,
        tool_name: str,
        tool_input: Any,
        options: Optional[ExecuteOptions] = None,
    ) -> ToolExecutionResult:
        """Execute on behalf of a role (access control applies)."""
        options = replace(options or ExecuteOptions(), user_role=role)
        return await self.execute_tool(tool_name, tool_input, options)

    # Events

    def add_event_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_event_listener(self, listener: EventListener) -> bool:
        """Remove a listener by identity. Returns False if it was not registered."""
        for index, existing in enumerate(self._listeners):
            if existing is listener:
                del self._listeners[index]
                return True
        return False

    def _emit_event(self, event_type: EventType, data: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event_type, data)
            except Exception:
                self._logger.exception(
                    f"Error in event listener for {event_type.value}",
                    extra={"event": event_type.value, "tool_name": data.get("tool_name")},
                )

    # Lifecycle

    def close(self) -> None:
        """Stop the cache sweep and release the handler thread pool."""
        self.cache.stop_cleanup()
        self._executor.shutdown()

    def __enter__(self) -> "ToolPipeline":
        return self

    def __exit__(self, *args) -> None:
        self.close()
