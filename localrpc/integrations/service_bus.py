"""
FastAPI Service Bus
-------------------
HTTP adapter exposing a pipeline's tools.

Routes:
- GET  /health               liveness
- GET  /tools                registered tools with their JSON schemas
- GET  /tools/openai         the same tools as OpenAI tool definitions
- POST /tools/{name}/invoke  execute a tool; body is the raw tool input
- GET  /metrics/{name}       latency summary for a tool

When auth is enabled, callers identify with an X-API-Key header (or a
bearer token) and the user's role goes through access control.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.errors import ErrorCategory, ToolExecutionError
from ..core.pipeline import ToolPipeline
from ..security.auth import AuthService, User
from ..tools.executor import ExecuteOptions
from .openai import OpenAIIntegration

API_VERSION = "0.1.0"

STATUS_BY_CATEGORY = {
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.PERMISSION_ERROR: 403,
    ErrorCategory.VALIDATION_ERROR: 422,
    ErrorCategory.TIMEOUT_ERROR: 504,
    ErrorCategory.TOOL_FAILURE: 500,
}


# Request/Response Models

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str = API_VERSION
    tools_loaded: int = 0
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class ToolInfo(BaseModel):
    """Tool information."""
    name: str
    description: str
    category: str
    parameters: Dict[str, Any]


class InvokeResponse(BaseModel):
    """Result of a tool invocation."""
    tool_name: str
    result: Any = None
    execution_time_ms: float


class MetricsSummary(BaseModel):
    tool_name: str
    count: int
    avg_execution_time_ms: Optional[float] = None
    p99_execution_time_ms: Optional[float] = None
    avg_validation_time_ms: Optional[float] = None


# Service Bus

class ServiceBus:
    """Binds a pipeline (and optionally an auth service) to FastAPI routes."""

    def __init__(self, pipeline: ToolPipeline, auth: Optional[AuthService] = None):
        self._pipeline = pipeline
        self._auth = auth
        self._openai = OpenAIIntegration(pipeline)
        self._logger = logging.getLogger("localrpc.integrations.service_bus")

    def create_app(self) -> FastAPI:
        """Create and configure the FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            self._logger.info("Service bus starting...")
            yield
            self._logger.info("Service bus shutting down...")

        app = FastAPI(
            title="localrpc",
            description="Local tool invocation service",
            version=API_VERSION,
            lifespan=lifespan,
        )

        @app.exception_handler(ToolExecutionError)
        async def tool_error_handler(request: Request, exc: ToolExecutionError):
            return JSONResponse(
                status_code=STATUS_BY_CATEGORY.get(exc.category, 500),
                content=exc.to_dict(),
            )

        self._register_routes(app)
        return app

    def _current_user(
        self,
        x_api_key: Optional[str] = Header(None),
        authorization: Optional[str] = Header(None),
    ) -> Optional[User]:
        """Resolve the caller. Returns None when auth is disabled."""
        if self._auth is None or not self._auth.enabled:
            return None

        user = None
        if x_api_key:
            user = self._auth.authenticate_with_api_key(x_api_key)
        elif authorization and authorization.lower().startswith("bearer "):
            user = self._auth.verify_token(authorization[7:].strip())

        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or missing credentials")
        return user

    def _register_routes(self, app: FastAPI) -> None:
        """Register all API routes."""
        pipeline = self._pipeline

        @app.get("/health", response_model=HealthResponse, tags=["System"])
        async def health_check():
            return HealthResponse(status="healthy", tools_loaded=len(pipeline.registry))

        @app.get("/tools", response_model=List[ToolInfo], tags=["Tools"])
        async def list_tools(user: Optional[User] = Depends(self._current_user)):
            """List available tools."""
            return [
                ToolInfo(
                    name=tool.name,
                    description=tool.description,
                    category=tool.category,
                    parameters=tool.schema.describe(),
                )
                for tool in pipeline.get_all_tools()
            ]

        @app.get("/tools/openai", tags=["Tools"])
        async def list_openai_tools(user: Optional[User] = Depends(self._current_user)):
            """Tools as OpenAI function definitions."""
            return [tool.model_dump() for tool in self._openai.get_tools()]

        @app.post("/tools/{name}/invoke", response_model=InvokeResponse, tags=["Tools"])
        async def invoke_tool(
            name: str,
            payload: Any = Body(None),
            user: Optional[User] = Depends(self._current_user),
        ):
            """Execute a tool with the request body as its input."""
            options = ExecuteOptions(user_role=user.role if user else None)
            result = await pipeline.execute_tool(name, {} if payload is None else payload, options)
            return InvokeResponse(
                tool_name=result.tool_name,
                result=result.result,
                execution_time_ms=result.execution_time_ms,
            )

        @app.get("/metrics/{name}", response_model=MetricsSummary, tags=["Metrics"])
        async def tool_metrics(name: str, user: Optional[User] = Depends(self._current_user)):
            if not pipeline.has_tool(name):
                raise HTTPException(status_code=404, detail=f"Tool '{name}' not found")
            return MetricsSummary(**pipeline.monitor.get_summary(name))


def create_app(pipeline: ToolPipeline, auth: Optional[AuthService] = None) -> FastAPI:
    """Create the FastAPI application."""
    bus = ServiceBus(pipeline, auth)
    return bus.create_app()


async def run_server(app: FastAPI, host: str = "127.0.0.1", port: int = 3000) -> None:
    """Run the service bus server."""
    import uvicorn

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
