"""
Tool Executor Tests
-------------------
Tests for the execution stages.

Tests cover:
- Resolution and authorization failures
- Validation (handler never runs on bad input)
- Caching (hits, TTL, canonical keys, duplicate computation)
- Deadlines, late completions and stall retries
- Metrics recording
"""

from pathlib import Path
import asyncio
import sys
import time

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import SUM_SCHEMA, CallCounter, GreetInput, greet
from localrpc.core.errors import (
    AccessDeniedError, ExecutionError, StallRetryPolicy, ToolExecutionError,
    ToolNotFoundError, ToolTimeoutError, ToolValidationError,
)
from localrpc.infra.cache import make_cache_key
from localrpc.infra.logging import get_invocation_id
from localrpc.tools.executor import ExecuteOptions, SettlementGate, Settlement, ToolExecutionResult, ToolExecutor
from localrpc.tools.registry import Tool, ToolConfig
from localrpc.tools.schema import ValidationOutcome

NO_CACHE = ExecuteOptions(use_cache=False)


def async_tool(name, handler, **config):
    return Tool(name=name, description="", schema={"type": "object", "properties": {}}, handler=handler,
                config=ToolConfig(**config))


class TestResolutionAndAccess:

    @pytest.mark.asyncio
    async def test_unknown_tool(self, executor):
        with pytest.raises(ToolNotFoundError) as exc_info:
            await executor.execute_tool("missing", {})
        assert exc_info.value.tool_name == "missing"

    @pytest.mark.asyncio
    async def test_denied_role_never_runs_handler(self, executor, registry, access_control, sum_tool, sum_handler):
        registry.register(sum_tool)
        access_control.add_policy("sum", ["user"])

        with pytest.raises(AccessDeniedError) as exc_info:
            await executor.execute_tool("sum", {"a": 1, "b": 2}, ExecuteOptions(user_role="guest"))

        assert exc_info.value.role == "guest"
        assert sum_handler.calls == []

    @pytest.mark.asyncio
    async def test_allowed_role_succeeds(self, executor, registry, access_control, sum_tool):
        registry.register(sum_tool)
        access_control.add_policy("sum", ["guest"])
        result = await executor.execute_tool("sum", {"a": 1, "b": 2}, ExecuteOptions(user_role="guest"))
        assert result.result == 3

    @pytest.mark.asyncio
    async def test_admin_bypasses_policy(self, executor, registry, access_control, sum_tool):
        registry.register(sum_tool)
        access_control.add_policy("sum", [])
        result = await executor.execute_tool("sum", {"a": 1, "b": 2}, ExecuteOptions(user_role="admin"))
        assert result.result == 3

    @pytest.mark.asyncio
    async def test_no_role_skips_authorization(self, executor, registry, access_control, sum_tool):
        registry.register(sum_tool)
        access_control.add_policy("sum", [])
        assert (await executor.execute_tool("sum", {"a": 1, "b": 2})).result == 3


class TestValidation:

    @pytest.mark.asyncio
    async def test_sum_of_valid_input(self, executor, registry, sum_tool):
        registry.register(sum_tool)
        result = await executor.execute_tool("sum", {"a": 2, "b": 3})
        assert isinstance(result, ToolExecutionResult)
        assert result.tool_name == "sum"
        assert result.result == 5
        assert result.execution_time_ms >= 0

    @pytest.mark.asyncio
    async def test_invalid_input_never_reaches_handler(self, executor, registry, sum_tool, sum_handler):
        registry.register(sum_tool)

        with pytest.raises(ToolValidationError) as exc_info:
            await executor.execute_tool("sum", {"a": "x", "b": 3})

        assert sum_handler.calls == []
        assert [issue.path for issue in exc_info.value.issues] == ["a"]
        assert exc_info.value.to_dict()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_handler_receives_normalized_value(self, executor, registry):
        handler = CallCounter(greet)
        registry.register(Tool(name="greet", description="", schema=GreetInput, handler=handler))

        await executor.execute_tool("greet", {"name": "John"})
        assert handler.calls == [GreetInput(name="John")]

    @pytest.mark.asyncio
    async def test_async_validator(self, executor, registry):
        class AsyncSchema:
            async def validate(self, raw):
                await asyncio.sleep(0)
                return ValidationOutcome.success({"doubled": raw["n"] * 2})

            def describe(self):
                return {"type": "object"}

        registry.register(Tool(name="double", description="", schema=AsyncSchema(), handler=lambda v: v["doubled"]))
        assert (await executor.execute_tool("double", {"n": 4})).result == 8

    @pytest.mark.asyncio
    async def test_validator_exception_wrapped(self, executor, registry):
        class BrokenSchema:
            def validate(self, raw):
                raise RuntimeError("boom")

            def describe(self):
                return {}

        registry.register(Tool(name="broken", description="", schema=BrokenSchema(), handler=lambda v: v))

        with pytest.raises(ToolValidationError) as exc_info:
            await executor.execute_tool("broken", {})
        assert isinstance(exc_info.value.cause, RuntimeError)


class TestHandlerFailures:

    @pytest.mark.asyncio
    async def test_handler_exception_wrapped(self, executor, registry):
        def explode(args):
            raise KeyError("nope")

        registry.register(async_tool("explode", explode))

        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute_tool("explode", {})

        assert isinstance(exc_info.value.cause, KeyError)
        assert exc_info.value.__cause__ is exc_info.value.cause

    @pytest.mark.asyncio
    async def test_tool_execution_error_passes_through(self, executor, registry):
        async def nested(args):
            raise ToolNotFoundError("inner")

        registry.register(async_tool("nested", nested))

        with pytest.raises(ToolNotFoundError) as exc_info:
            await executor.execute_tool("nested", {})
        assert exc_info.value.tool_name == "inner"

    @pytest.mark.asyncio
    async def test_failures_share_base_class(self, executor):
        with pytest.raises(ToolExecutionError):
            await executor.execute_tool("missing", {})

    @pytest.mark.asyncio
    async def test_failed_call_not_cached(self, executor, registry, cache):
        def explode(args):
            raise ValueError("bad")

        registry.register(async_tool("explode", explode))
        with pytest.raises(ExecutionError):
            await executor.execute_tool("explode", {})
        assert cache.size() == 0


class TestCaching:

    @pytest.mark.asyncio
    async def test_second_call_hits_cache(self, executor, registry, sum_tool, sum_handler):
        registry.register(sum_tool)

        first = await executor.execute_tool("sum", {"a": 2, "b": 3})
        second = await executor.execute_tool("sum", {"a": 2, "b": 3})

        assert len(sum_handler.calls) == 1
        assert second is first

    @pytest.mark.asyncio
    async def test_key_order_does_not_matter(self, executor, registry, sum_tool, sum_handler):
        registry.register(sum_tool)
        await executor.execute_tool("sum", {"a": 2, "b": 3})
        await executor.execute_tool("sum", {"b": 3, "a": 2})
        assert len(sum_handler.calls) == 1

    @pytest.mark.asyncio
    async def test_cache_disabled_per_call(self, executor, registry, sum_tool, sum_handler):
        registry.register(sum_tool)
        await executor.execute_tool("sum", {"a": 2, "b": 3}, NO_CACHE)
        await executor.execute_tool("sum", {"a": 2, "b": 3}, NO_CACHE)
        assert len(sum_handler.calls) == 2

    @pytest.mark.asyncio
    async def test_cache_disabled_by_tool_config(self, executor, registry, sum_handler):
        registry.register(Tool(name="sum", description="", schema=SUM_SCHEMA, handler=sum_handler,
                               config=ToolConfig(enable_cache=False)))
        await executor.execute_tool("sum", {"a": 2, "b": 3})
        await executor.execute_tool("sum", {"a": 2, "b": 3})
        assert len(sum_handler.calls) == 2

    @pytest.mark.asyncio
    async def test_call_option_overrides_tool_config(self, executor, registry, sum_handler):
        registry.register(Tool(name="sum", description="", schema=SUM_SCHEMA, handler=sum_handler,
                               config=ToolConfig(enable_cache=False)))
        options = ExecuteOptions(use_cache=True)
        await executor.execute_tool("sum", {"a": 2, "b": 3}, options)
        await executor.execute_tool("sum", {"a": 2, "b": 3}, options)
        assert len(sum_handler.calls) == 1

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, executor, registry, clock, sum_tool, sum_handler):
        registry.register(sum_tool)
        options = ExecuteOptions(cache_ttl_seconds=10)

        await executor.execute_tool("sum", {"a": 2, "b": 3}, options)
        clock.advance(9.5)
        await executor.execute_tool("sum", {"a": 2, "b": 3}, options)
        assert len(sum_handler.calls) == 1

        clock.advance(1)
        await executor.execute_tool("sum", {"a": 2, "b": 3}, options)
        assert len(sum_handler.calls) == 2

    @pytest.mark.asyncio
    async def test_default_ttl(self, executor, registry, cache, clock, sum_tool, sum_handler):
        registry.register(sum_tool)
        await executor.execute_tool("sum", {"a": 2, "b": 3})

        clock.advance(299)
        assert cache.has(make_cache_key("sum", {"a": 2, "b": 3}))
        clock.advance(2)
        assert not cache.has(make_cache_key("sum", {"a": 2, "b": 3}))

    @pytest.mark.asyncio
    async def test_tool_cache_time(self, executor, registry, cache, clock, sum_handler):
        registry.register(Tool(name="sum", description="", schema=SUM_SCHEMA, handler=sum_handler,
                               config=ToolConfig(cache_time_seconds=5)))
        await executor.execute_tool("sum", {"a": 2, "b": 3})
        clock.advance(6)
        assert cache.size() == 1
        assert not cache.has(make_cache_key("sum", {"a": 2, "b": 3}))

    @pytest.mark.asyncio
    async def test_concurrent_misses_may_compute_twice(self, executor, registry, cache):
        """Identical concurrent calls both run; the cache keeps the last writer."""
        calls = []

        async def slow_counter(args):
            calls.append(len(calls) + 1)
            call_number = calls[-1]
            # the first call finishes last
            await asyncio.sleep(0.05 if call_number == 1 else 0.01)
            return call_number

        registry.register(async_tool("counter", slow_counter))

        first, second = await asyncio.gather(
            executor.execute_tool("counter", {}),
            executor.execute_tool("counter", {}),
        )

        assert calls == [1, 2]
        assert {first.result, second.result} == {1, 2}
        assert cache.get(make_cache_key("counter", {})).result == 1


    @pytest.mark.asyncio
    async def test_mixed_key_types_are_fingerprinted(self, executor, registry, cache):
        handler = CallCounter(lambda args: len(args))
        registry.register(async_tool("count_keys", handler))

        first = await executor.execute_tool("count_keys", {"a": "x", 1: "y"})
        second = await executor.execute_tool("count_keys", {1: "y", "a": "x"})

        assert first.result == 2
        assert second is first
        assert len(handler.calls) == 1
        assert cache.has(make_cache_key("count_keys", {"a": "x", 1: "y"}))

    @pytest.mark.asyncio
    async def test_unserializable_input_bypasses_cache(self, executor, registry, cache):
        handler = CallCounter(lambda args: sorted(args))
        registry.register(async_tool("keys", handler))
        looped = {"a": 1}
        looped["self"] = looped

        assert (await executor.execute_tool("keys", looped)).result == ["a", "self"]
        await executor.execute_tool("keys", looped)

        assert len(handler.calls) == 2
        assert cache.size() == 0


class TestTimeouts:

    @pytest.mark.asyncio
    async def test_async_handler_times_out(self, executor, registry, cache, monitor):
        async def stall(args):
            await asyncio.sleep(1)
            return "late"

        registry.register(async_tool("stall", stall))

        with pytest.raises(ToolTimeoutError) as exc_info:
            await executor.execute_tool("stall", {}, ExecuteOptions(timeout_seconds=0.05))

        assert exc_info.value.timeout_seconds == 0.05
        assert "timed out after 50ms" in str(exc_info.value)
        assert cache.size() == 0
        assert len(monitor) == 0

    @pytest.mark.asyncio
    async def test_late_success_never_cached(self, executor, registry, cache, monitor):
        """A handler finishing after its deadline leaves no trace."""
        finished = asyncio.Event()

        async def late(args):
            await asyncio.sleep(0.1)
            finished.set()
            return "late"

        registry.register(async_tool("late", late))

        with pytest.raises(ToolTimeoutError):
            await executor.execute_tool("late", {}, ExecuteOptions(timeout_seconds=0.02))

        await asyncio.wait_for(finished.wait(), timeout=2)
        await asyncio.sleep(0.01)
        assert cache.size() == 0
        assert len(monitor) == 0

    @pytest.mark.asyncio
    async def test_late_failure_is_drained(self, executor, registry):
        async def late_failure(args):
            await asyncio.sleep(0.05)
            raise RuntimeError("too late")

        registry.register(async_tool("late_failure", late_failure))

        with pytest.raises(ToolTimeoutError):
            await executor.execute_tool("late_failure", {}, ExecuteOptions(timeout_seconds=0.01))
        await asyncio.sleep(0.1)

    @pytest.mark.asyncio
    async def test_sync_handler_times_out(self, executor, registry, cache):
        def blocking(args):
            time.sleep(0.2)
            return "late"

        registry.register(async_tool("blocking", blocking))

        with pytest.raises(ToolTimeoutError):
            await executor.execute_tool("blocking", {}, ExecuteOptions(timeout_seconds=0.05))

        await asyncio.sleep(0.3)
        assert cache.size() == 0

    @pytest.mark.asyncio
    async def test_fast_handler_beats_deadline(self, executor, registry):
        async def quick(args):
            await asyncio.sleep(0.01)
            return "on time"

        registry.register(async_tool("quick", quick))
        result = await executor.execute_tool("quick", {}, ExecuteOptions(timeout_seconds=1))
        assert result.result == "on time"

    @pytest.mark.asyncio
    async def test_tool_timeout_used_when_call_sets_none(self, executor, registry):
        async def stall(args):
            await asyncio.sleep(1)

        registry.register(async_tool("stall", stall, timeout_seconds=0.03))

        with pytest.raises(ToolTimeoutError) as exc_info:
            await executor.execute_tool("stall", {})
        assert exc_info.value.timeout_seconds == 0.03

    @pytest.mark.asyncio
    async def test_call_timeout_overrides_tool_timeout(self, executor, registry):
        async def stall(args):
            await asyncio.sleep(1)

        registry.register(async_tool("stall", stall, timeout_seconds=5))

        with pytest.raises(ToolTimeoutError) as exc_info:
            await executor.execute_tool("stall", {}, ExecuteOptions(timeout_seconds=0.02))
        assert exc_info.value.timeout_seconds == 0.02

    @pytest.mark.asyncio
    async def test_executor_default_timeout(self, registry):
        async def stall(args):
            await asyncio.sleep(1)

        registry.register(async_tool("stall", stall))
        executor = ToolExecutor(registry, default_timeout_seconds=0.02)
        try:
            with pytest.raises(ToolTimeoutError) as exc_info:
                await executor.execute_tool("stall", {})
            assert exc_info.value.timeout_seconds == 0.02
        finally:
            executor.shutdown()

    def test_non_positive_timeouts_rejected(self, registry):
        with pytest.raises(ValueError):
            ExecuteOptions(timeout_seconds=0)
        with pytest.raises(ValueError):
            ToolConfig(timeout_seconds=-1)
        with pytest.raises(ValueError):
            ToolExecutor(registry, default_timeout_seconds=0)

    @pytest.mark.asyncio
    async def test_invocation_id_visible_to_async_handler(self, executor, registry):
        async def whoami(args):
            return get_invocation_id()

        registry.register(async_tool("whoami", whoami))
        result = await executor.execute_tool("whoami", {}, NO_CACHE)
        assert result.result.startswith("inv_")
        assert get_invocation_id() is None


class TestStallRetry:

    @pytest.fixture
    def fast_retry_executor(self, registry, cache, monitor):
        executor = ToolExecutor(registry, cache=cache, monitor=monitor,
                                stall_retry_policy=StallRetryPolicy(base_delay=0.001, jitter=0))
        yield executor
        executor.shutdown()

    @pytest.mark.asyncio
    async def test_stalled_attempt_retried(self, fast_retry_executor, registry):
        attempts = []

        async def stalls_once(args):
            attempts.append(1)
            if len(attempts) == 1:
                await asyncio.sleep(1)
            return "recovered"

        registry.register(async_tool("flaky", stalls_once, timeout_seconds=0.03, retry_count_on_stall=1))

        result = await fast_retry_executor.execute_tool("flaky", {})
        assert result.result == "recovered"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, fast_retry_executor, registry):
        attempts = []

        async def always_stalls(args):
            attempts.append(1)
            await asyncio.sleep(1)

        registry.register(async_tool("stuck", always_stalls, timeout_seconds=0.02, retry_count_on_stall=2))

        with pytest.raises(ToolTimeoutError) as exc_info:
            await fast_retry_executor.execute_tool("stuck", {})

        assert exc_info.value.attempts == 3
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_handler_errors_not_retried(self, fast_retry_executor, registry):
        attempts = []

        def fails(args):
            attempts.append(1)
            raise ValueError("bad")

        registry.register(async_tool("fails", fails, timeout_seconds=1, retry_count_on_stall=3))

        with pytest.raises(ExecutionError):
            await fast_retry_executor.execute_tool("fails", {})
        assert len(attempts) == 1

    def test_backoff_grows_and_caps(self):
        policy = StallRetryPolicy(base_delay=0.1, max_delay=0.3, jitter=0)
        assert [policy.get_delay(n) for n in (1, 2, 3, 4)] == [0.1, 0.2, 0.3, 0.3]

    def test_jitter_bounded(self):
        policy = StallRetryPolicy(base_delay=1.0, max_delay=10, jitter=0.5)
        assert all(1.0 <= policy.get_delay(1) <= 1.5 for _ in range(50))


class TestSettlementGate:

    def test_first_claim_wins(self):
        gate = SettlementGate()
        assert gate.settle(Settlement.TIMED_OUT)
        assert not gate.settle(Settlement.COMPLETED)
        assert gate.outcome is Settlement.TIMED_OUT
        assert not gate.completed


class TestMetrics:

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, executor, registry, monitor, sum_tool):
        registry.register(sum_tool)
        await executor.execute_tool("sum", {"a": 2, "b": 3})

        [sample] = monitor.get_tool_metrics_for_tool("sum")
        assert sample.input_size_bytes == len('{"a":2,"b":3}')
        assert sample.output_size_bytes == 1
        assert sample.validation_time_ms >= 0

    @pytest.mark.asyncio
    async def test_cache_hit_records_nothing(self, executor, registry, monitor, sum_tool):
        registry.register(sum_tool)
        await executor.execute_tool("sum", {"a": 2, "b": 3})
        await executor.execute_tool("sum", {"a": 2, "b": 3})
        assert len(monitor) == 1

    @pytest.mark.asyncio
    async def test_metrics_can_be_disabled(self, executor, registry, monitor, sum_tool):
        registry.register(sum_tool)
        await executor.execute_tool("sum", {"a": 2, "b": 3}, ExecuteOptions(collect_metrics=False))
        assert len(monitor) == 0

    @pytest.mark.asyncio
    async def test_metrics_failure_suppressed(self, registry, sum_tool):
        class BrokenMonitor:
            def record_tool_metrics(self, metrics):
                raise RuntimeError("disk full")

        registry.register(sum_tool)
        executor = ToolExecutor(registry, monitor=BrokenMonitor())
        try:
            assert (await executor.execute_tool("sum", {"a": 2, "b": 3})).result == 5
        finally:
            executor.shutdown()
