"""
localrpc Test Configuration
---------------------------
Shared fixtures and configuration for all tests.

Every fixture builds fresh collaborators so tests never share state.
"""

import sys
from pathlib import Path
from typing import Optional

import pytest
from pydantic import BaseModel, Field

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from localrpc.core.pipeline import PipelineConfig, ToolPipeline
from localrpc.infra.cache import ToolCache
from localrpc.infra.metrics import PerformanceMonitor
from localrpc.security.access_control import AccessControlService
from localrpc.tools.executor import ToolExecutor
from localrpc.tools.registry import Tool, ToolRegistry
from localrpc.tools.schema import ParameterType, ToolParameter, ToolSchema


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class GreetInput(BaseModel):
    name: str = Field(..., min_length=1)
    age: Optional[int] = None


def greet(args: GreetInput) -> dict:
    if args.age is not None:
        return {"greeting": f"Hello, {args.name} ({args.age})!"}
    return {"greeting": f"Hello, {args.name}!"}


SUM_SCHEMA = ToolSchema(parameters=[
    ToolParameter("a", ParameterType.NUMBER),
    ToolParameter("b", ParameterType.NUMBER),
])


class CallCounter:
    """Handler wrapper that records every call."""

    def __init__(self, func):
        self.func = func
        self.calls = []

    def __call__(self, args):
        self.calls.append(args)
        return self.func(args)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root path."""
    return PROJECT_ROOT


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def access_control():
    return AccessControlService()


@pytest.fixture
def cache(clock):
    return ToolCache(max_entries=100, clock=clock)


@pytest.fixture
def monitor():
    return PerformanceMonitor(metrics_limit=100)


@pytest.fixture
def executor(registry, access_control, cache, monitor):
    executor = ToolExecutor(registry, access_control, cache, monitor)
    yield executor
    executor.shutdown()


@pytest.fixture
def pipeline():
    with ToolPipeline(PipelineConfig(cache_cleanup_interval_seconds=None)) as pipeline:
        yield pipeline


@pytest.fixture
def greet_tool():
    return Tool(name="greet", description="Greet someone", schema=GreetInput, handler=greet)


@pytest.fixture
def sum_handler():
    return CallCounter(lambda args: args["a"] + args["b"])


@pytest.fixture
def sum_tool(sum_handler):
    return Tool(name="sum", description="Add two numbers", schema=SUM_SCHEMA, handler=sum_handler)
