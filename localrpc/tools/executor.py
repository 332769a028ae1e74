"""
Tool Executor
-------------
Runs a registered tool under validation, access control, deadline,
caching and metrics.

Stages, in order, stopping at the first failure:
1. Resolve the tool by name
2. Authorize the caller's role (only when a role is given)
3. Probe the cache with the raw input's fingerprint; a hit returns at once
4. Validate the input; the handler gets the normalized value
5. Run the handler against its deadline (optionally retrying stalls)
6. Record metrics (best-effort, never fails the call)
7. Store the result in the cache
8. Return the result

A handler that misses its deadline is not cancelled. Its eventual result is
discarded, and a settlement gate guarantees it never reaches the cache,
the metrics or the caller.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional, Tuple
import asyncio
import functools
import inspect
import logging
import threading
import time

from ..core.errors import (
    AccessDeniedError,
    ExecutionError,
    StallRetryPolicy,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    ToolValidationError,
)
from ..infra.cache import ToolCache, canonical_json, make_cache_key
from ..infra.logging import InvocationContext
from ..infra.metrics import PerformanceMonitor, ToolMetrics
from ..security.access_control import AccessControlService, Role
from .registry import Tool, ToolRegistry, check_timeout
from .schema import ValidationOutcome

DEFAULT_CACHE_TTL_SECONDS = 300.0


@dataclass
class ToolExecutionResult:
    """Result of a successful tool execution. Also what the cache stores."""
    tool_name: str
    result: Any
    execution_time_ms: float

    def __repr__(self) -> str:
        return f"ToolExecutionResult({self.tool_name}: {self.result!r}, {self.execution_time_ms:.1f}ms)"


@dataclass
class ExecuteOptions:
    """Per-call overrides. None means fall back to tool config, then defaults."""
    timeout_seconds: Optional[float] = None
    use_cache: Optional[bool] = None
    cache_ttl_seconds: Optional[float] = None
    user_role: Optional[Role] = None
    collect_metrics: bool = True

    def __post_init__(self):
        check_timeout(self.timeout_seconds)


class Settlement(Enum):
    """How a handler race ended."""
    COMPLETED = auto()
    TIMED_OUT = auto()


class SettlementGate:
    """
    First-claim-wins record of how a handler race ended.

    Once settled, the outcome never changes. Late completions check the
    gate and leave shared state alone.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._outcome: Optional[Settlement] = None

    def settle(self, outcome: Settlement) -> bool:
        """Claim the outcome. Returns False if the race was already settled."""
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
            return True

    @property
    def outcome(self) -> Optional[Settlement]:
        return self._outcome

    @property
    def completed(self) -> bool:
        return self._outcome is Settlement.COMPLETED


class ToolExecutor:
    """
    Executes tools from a registry.

    Rules:
    - Every failure is a ToolExecutionError
    - Only metrics failures are swallowed
    - Sync handlers run on a private thread pool so the deadline can fire
    """

    def __init__(
        self,
        registry: ToolRegistry,
        access_control: Optional[AccessControlService] = None,
        cache: Optional[ToolCache] = None,
        monitor: Optional[PerformanceMonitor] = None,
        default_timeout_seconds: Optional[float] = None,
        stall_retry_policy: Optional[StallRetryPolicy] = None,
        max_workers: Optional[int] = None,
    ):
        self.registry = registry
        self.access_control = access_control if access_control is not None else AccessControlService()
        self.cache = cache if cache is not None else ToolCache()
        self.monitor = monitor if monitor is not None else PerformanceMonitor()
        self.default_timeout_seconds = check_timeout(default_timeout_seconds, "default_timeout_seconds")
        self.stall_retry_policy = stall_retry_policy or StallRetryPolicy()
        self._thread_pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="localrpc-tool",
        )
        self._logger = logging.getLogger("localrpc.tools.executor")

    async def execute_tool(
        self,
        tool_name: str,
        tool_input: Any,
        options: Optional[ExecuteOptions] = None,
    ) -> ToolExecutionResult:
        """
        Execute a tool by name with the given raw input.

        Raises ToolExecutionError (or a subclass) on any failure.
        """
        options = options or ExecuteOptions()

        with InvocationContext():
            self._logger.debug(f"Executing tool '{tool_name}'", extra={"tool_name": tool_name})

            # 1. Resolve
            tool = self.registry.get_tool(tool_name)
            if tool is None:
                self._logger.error(f"Tool '{tool_name}' not found", extra={"tool_name": tool_name})
                raise ToolNotFoundError(tool_name)

            # 2. Authorize
            if options.user_role is not None:
                if not self.access_control.is_allowed(tool_name, options.user_role):
                    error = AccessDeniedError(tool_name, options.user_role)
                    self._logger.warning(str(error), extra={"tool_name": tool_name, "role": error.role})
                    raise error

            # 3. Cache probe
            use_cache = self._resolve_use_cache(tool, options)
            cache_key = None
            if use_cache:
                cache_key = self._fingerprint(tool_name, tool_input)
                use_cache = cache_key is not None
            if use_cache:
                cached = self.cache.get(cache_key)
                if cached is not None:
                    self._logger.debug(
                        f"Cache hit for tool '{tool_name}'",
                        extra={"tool_name": tool_name, "cache_hit": True},
                    )
                    return cached
                self._logger.debug(
                    f"Cache miss for tool '{tool_name}'",
                    extra={"tool_name": tool_name, "cache_hit": False},
                )

            # 4. Validate
            validation_start = time.perf_counter()
            validated_input = await self._validate(tool, tool_input)
            validation_time_ms = (time.perf_counter() - validation_start) * 1000

            # 5. Execute with deadline
            timeout_seconds = self._resolve_timeout(tool, options)
            execution_start = time.perf_counter()
            output, gate = await self._execute_with_retry(tool, validated_input, timeout_seconds)
            execution_time_ms = (time.perf_counter() - execution_start) * 1000

            tool_result = ToolExecutionResult(
                tool_name=tool_name,
                result=output,
                execution_time_ms=execution_time_ms,
            )

            # 6. Metrics (only the race winner may touch shared state)
            if gate.completed and options.collect_metrics:
                self._record_metrics(tool_name, tool_input, output, execution_time_ms, validation_time_ms)

            # 7. Cache
            if gate.completed and use_cache:
                ttl = self._resolve_cache_ttl(tool, options)
                self.cache.set(cache_key, tool_result, ttl)

            self._logger.debug(
                f"Tool '{tool_name}' executed successfully in {execution_time_ms:.1f}ms",
                extra={"tool_name": tool_name, "execution_time_ms": execution_time_ms},
            )
            return tool_result

    def shutdown(self, wait: bool = False) -> None:
        """Release the handler thread pool. Running sync handlers finish on their own."""
        self._thread_pool.shutdown(wait=wait)

    # Option resolution

    def _resolve_use_cache(self, tool: Tool, options: ExecuteOptions) -> bool:
        if options.use_cache is not None:
            return options.use_cache
        if tool.config.enable_cache is not None:
            return tool.config.enable_cache
        return True

    def _fingerprint(self, tool_name: str, tool_input: Any) -> Optional[str]:
        """Cache key for the raw input, or None when it cannot be serialized."""
        try:
            return make_cache_key(tool_name, tool_input)
        except (TypeError, ValueError, RecursionError) as e:
            self._logger.debug(
                f"Input for tool '{tool_name}' has no fingerprint, bypassing cache: {e}",
                extra={"tool_name": tool_name},
            )
            return None

    def _resolve_timeout(self, tool: Tool, options: ExecuteOptions) -> Optional[float]:
        for candidate in (options.timeout_seconds, tool.config.timeout_seconds, self.default_timeout_seconds):
            if candidate is not None:
                return candidate
        return None

    def _resolve_cache_ttl(self, tool: Tool, options: ExecuteOptions) -> float:
        if options.cache_ttl_seconds is not None:
            return options.cache_ttl_seconds
        if tool.config.cache_time_seconds is not None:
            return tool.config.cache_time_seconds
        return DEFAULT_CACHE_TTL_SECONDS

    # Stages

    async def _validate(self, tool: Tool, tool_input: Any) -> Any:
        try:
            outcome = tool.schema.validate(tool_input)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            self._logger.error(f"Validator for tool '{tool.name}' raised: {e}", extra={"tool_name": tool.name})
            raise ToolValidationError(tool.name, (str(e),), cause=e) from e

        if not isinstance(outcome, ValidationOutcome):
            raise ToolValidationError(tool.name, (f"validator returned {type(outcome).__name__}",))

        if not outcome.ok:
            error = ToolValidationError(tool.name, outcome.issues)
            self._logger.warning(str(error), extra={"tool_name": tool.name})
            raise error

        return outcome.value

    async def _execute_with_retry(
        self,
        tool: Tool,
        validated_input: Any,
        timeout_seconds: Optional[float],
    ) -> Tuple[Any, SettlementGate]:
        """Run the handler, retrying timed-out attempts up to retry_count_on_stall times."""
        max_attempts = 1 + max(0, tool.config.retry_count_on_stall)

        attempt = 1
        while True:
            try:
                return await self._execute_with_timeout(tool, validated_input, timeout_seconds, attempt)
            except ToolTimeoutError:
                if attempt >= max_attempts:
                    raise
                delay = self.stall_retry_policy.get_delay(attempt)
                self._logger.warning(
                    f"Tool '{tool.name}' stalled (attempt {attempt}/{max_attempts}), retrying in {delay:.2f}s",
                    extra={"tool_name": tool.name},
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _execute_with_timeout(
        self,
        tool: Tool,
        validated_input: Any,
        timeout_seconds: Optional[float],
        attempt: int = 1,
    ) -> Tuple[Any, SettlementGate]:
        """Race the handler against the deadline. Exactly one side wins."""
        task = asyncio.ensure_future(self._call_handler(tool, validated_input))
        gate = SettlementGate()

        done, _ = await asyncio.wait({task}, timeout=timeout_seconds)

        if task in done and gate.settle(Settlement.COMPLETED):
            try:
                return task.result(), gate
            except ToolExecutionError:
                raise
            except Exception as e:
                self._logger.error(f"Error executing tool '{tool.name}': {e}", extra={"tool_name": tool.name})
                raise ExecutionError(tool.name, e) from e

        gate.settle(Settlement.TIMED_OUT)
        task.add_done_callback(functools.partial(self._discard_late_settlement, tool.name, gate))
        self._logger.error(
            f"Timeout executing {tool.name} after {timeout_seconds}s",
            extra={"tool_name": tool.name},
        )
        raise ToolTimeoutError(tool.name, timeout_seconds, attempts=attempt)

    async def _call_handler(self, tool: Tool, validated_input: Any) -> Any:
        if inspect.iscoroutinefunction(tool.handler):
            return await tool.handler(validated_input)

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(self._thread_pool, tool.handler, validated_input)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _discard_late_settlement(self, tool_name: str, gate: SettlementGate, task: asyncio.Future) -> None:
        """Drain a handler that finished after its deadline was reported."""
        if task.cancelled():
            return
        # Retrieving the exception keeps asyncio from reporting it as unhandled
        error = task.exception()
        if gate.outcome is not Settlement.TIMED_OUT:
            return
        if error is not None:
            self._logger.debug(f"Discarded late failure from '{tool_name}': {error}")
        else:
            self._logger.debug(f"Discarded late result from '{tool_name}'")

    def _record_metrics(
        self,
        tool_name: str,
        tool_input: Any,
        output: Any,
        execution_time_ms: float,
        validation_time_ms: float,
    ) -> None:
        try:
            self.monitor.record_tool_metrics(ToolMetrics(
                tool_name=tool_name,
                execution_time_ms=execution_time_ms,
                validation_time_ms=validation_time_ms,
                input_size_bytes=len(canonical_json(tool_input).encode("utf-8")),
                output_size_bytes=len(canonical_json(output).encode("utf-8")),
            ))
        except Exception as e:
            self._logger.warning(
                f"Failed to record performance metrics for tool '{tool_name}': {e}",
                extra={"tool_name": tool_name},
            )
