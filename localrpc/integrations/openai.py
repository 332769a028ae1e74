"""
OpenAI Function Calling Adapter
-------------------------------
Publishes registered tools as OpenAI tool definitions and executes the
function calls a model returns.

Usage:
    integration = OpenAIIntegration(pipeline)
    tools = [t.model_dump() for t in integration.get_tools()]
    ...
    output = await integration.execute_tool(OpenAIFunctionCall.model_validate(call))
"""

from typing import Any, Dict, List, Literal
import json
import logging

from pydantic import BaseModel, Field

from ..core.pipeline import ToolPipeline
from ..tools.registry import Tool


class FunctionCallParseError(ValueError):
    """The model produced arguments that are not a JSON object."""

    def __init__(self, function_name: str, reason: str):
        self.function_name = function_name
        super().__init__(f"Failed to parse function call arguments for '{function_name}': {reason}")


class OpenAIFunction(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class OpenAITool(BaseModel):
    type: Literal["function"] = "function"
    function: OpenAIFunction


class FunctionCallBody(BaseModel):
    name: str
    arguments: str = "{}"


class OpenAIFunctionCall(BaseModel):
    id: str = ""
    type: Literal["function"] = "function"
    function: FunctionCallBody


class SchemaConverter:
    """Converts between tool definitions and OpenAI shapes."""

    @staticmethod
    def convert_tool(tool: Tool) -> OpenAITool:
        return OpenAITool(
            function=OpenAIFunction(
                name=tool.name,
                description=tool.description,
                parameters=tool.schema.describe(),
            )
        )

    @staticmethod
    def parse_function_call_arguments(call: OpenAIFunctionCall) -> Dict[str, Any]:
        """Decode the JSON arguments string. An empty string means no arguments."""
        raw = call.function.arguments
        if not raw or not raw.strip():
            return {}

        try:
            args = json.loads(raw)
        except json.JSONDecodeError as e:
            raise FunctionCallParseError(call.function.name, str(e)) from e

        if not isinstance(args, dict):
            raise FunctionCallParseError(call.function.name, f"expected an object, got {type(args).__name__}")
        return args


class OpenAIIntegration:
    """Bridges a pipeline to OpenAI function calling."""

    def __init__(self, pipeline: ToolPipeline):
        self.pipeline = pipeline
        self._logger = logging.getLogger("localrpc.integrations.openai")

    def get_tools(self) -> List[OpenAITool]:
        return [SchemaConverter.convert_tool(tool) for tool in self.pipeline.get_all_tools()]

    async def execute_tool(self, call: OpenAIFunctionCall) -> Any:
        """Execute a function call and return the tool's raw output."""
        args = SchemaConverter.parse_function_call_arguments(call)
        self._logger.debug(f"Function call {call.id or '-'} -> {call.function.name}")
        result = await self.pipeline.execute_tool(call.function.name, args)
        return result.result
