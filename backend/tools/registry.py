"""
Tool Registry - Unified tool dispatch for the CSR agent.

Each tool is a self-contained, immutable definition that is registered once
at composition time. The registry resolves a tool name to its definition,
exports the OpenAI function-calling schema, and runs handlers with argument
validation and a per-tool timeout.

Tool failures never raise out of execute(): they come back as a failed
ToolResult so the agent loop can feed them to the model.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import ConfigurationError, ToolExecutionError, ValidationError, format_error_for_llm
from logging_config import log_tool

logger = logging.getLogger(__name__)

# JSON schema type name -> accepted Python types
_JSON_TYPES: Dict[str, Tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


@dataclass(frozen=True)
class ToolParameter:
    """One named, typed parameter of a tool."""

    name: str
    type: str
    description: str = ""
    required: bool = True
    items: Optional[Dict[str, Any]] = None  # Element schema for array parameters


@dataclass(frozen=True)
class ToolDefinition:
    """Definition of a tool for the registry."""

    name: str
    description: str
    parameters: Tuple[ToolParameter, ...]
    handler: Callable[..., Any]
    requires_approval: bool = False
    timeout: Optional[float] = None  # Seconds; registry default when None

    @property
    def required_params(self) -> List[str]:
        return [p.name for p in self.parameters if p.required]


@dataclass
class ToolResult:
    """Standardized result from tool execution."""

    success: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_step_result(self) -> Dict[str, Any]:
        """Shape recorded on an agent step and sent back to the model."""
        if self.success:
            return self.output
        return {**self.output, "success": False, "error": self.error}


class ToolRegistry:
    """
    Registry of tool definitions keyed by unique name.

    Usage:
        registry = ToolRegistry()
        registry.register(ToolDefinition(...))

        # LLM-compatible schema
        tools_schema = registry.get_tools_schema()

        # Execute a tool
        result = await registry.execute("lookupOrder", {"orderId": "ORD-12345"})
    """

    def __init__(self, default_timeout: float = 30.0):
        self._tools: Dict[str, ToolDefinition] = {}
        self.default_timeout = default_timeout

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool definition. Names are unique."""
        if tool.name in self._tools:
            raise ConfigurationError(
                f"Tool already registered: {tool.name}",
                details="Tool names must be unique within a registry",
                tool=tool.name,
            )
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def get(self, name: str) -> Optional[ToolDefinition]:
        """Get a tool definition by name."""
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def get_tools_schema(self, names: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Generate OpenAI-compatible tools schema for function calling.

        Args:
            names: Restrict the schema to these tools (all tools when None)
        """
        schema = []
        for tool in self._tools.values():
            if names is not None and tool.name not in names:
                continue

            properties = {}
            for param in tool.parameters:
                prop: Dict[str, Any] = {"type": param.type, "description": param.description}
                if param.items:
                    prop["items"] = param.items
                properties[param.name] = prop

            schema.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": {
                            "type": "object",
                            "properties": properties,
                            "required": tool.required_params,
                        },
                    },
                }
            )
        return schema

    def validate_args(self, tool: ToolDefinition, args: Dict[str, Any]) -> Dict[str, Any]:
        """Check required params and basic JSON types, dropping unknown keys.

        Raises:
            ValidationError: missing required parameter or wrong type
        """
        if not isinstance(args, dict):
            raise ValidationError(
                f"Arguments for {tool.name} must be an object",
                expected="object",
                received=type(args).__name__,
            )

        cleaned = {}
        for param in tool.parameters:
            if param.name not in args or args[param.name] is None:
                if param.required:
                    raise ValidationError(
                        f"Missing required parameter: {param.name}",
                        parameter=param.name,
                    )
                continue

            value = args[param.name]
            accepted = _JSON_TYPES.get(param.type)
            # bool is an int subclass; keep booleans out of numeric params
            wrong_bool = isinstance(value, bool) and param.type in ("number", "integer")
            if accepted and (wrong_bool or not isinstance(value, accepted)):
                raise ValidationError(
                    f"Invalid type for parameter: {param.name}",
                    parameter=param.name,
                    expected=param.type,
                    received=type(value).__name__,
                )
            cleaned[param.name] = value

        return cleaned

    async def execute(self, name: str, args: Dict[str, Any], timeout: Optional[float] = None) -> ToolResult:
        """
        Execute a tool by name with given arguments.

        Args:
            name: Tool name
            args: Tool arguments (as produced by the model)
            timeout: Override for the tool's own timeout

        Returns:
            ToolResult with success status, output and error summary
        """
        tool = self._tools.get(name)
        if not tool:
            return ToolResult(success=False, error=f"Unknown tool: {name}")

        try:
            kwargs = self.validate_args(tool, args)
        except ValidationError as e:
            logger.warning(f"Tool {name} rejected arguments: {e}")
            return ToolResult(success=False, error=format_error_for_llm(e, tool=name))

        limit = timeout or tool.timeout or self.default_timeout
        log_tool(logger, name, "start", args=kwargs)
        started = time.perf_counter()

        def finished(ok: bool) -> None:
            log_tool(logger, name, "end", duration_ms=(time.perf_counter() - started) * 1000, success=ok)

        try:
            if inspect.iscoroutinefunction(tool.handler):
                output = await asyncio.wait_for(tool.handler(**kwargs), timeout=limit)
            else:
                loop = asyncio.get_running_loop()
                output = await asyncio.wait_for(
                    loop.run_in_executor(None, lambda: tool.handler(**kwargs)),
                    timeout=limit,
                )
        except asyncio.TimeoutError:
            err = ToolExecutionError(f"Timed out after {limit:g}s", tool=name, error_type="timeout")
            logger.warning(f"Tool {name} timed out after {limit:g}s")
            finished(False)
            return ToolResult(success=False, error=format_error_for_llm(err, tool=name))
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}", exc_info=True)
            finished(False)
            return ToolResult(success=False, error=format_error_for_llm(e, tool=name))

        if not isinstance(output, dict):
            output = {"result": output}

        # Handlers wrapped by handle_async_tool_errors report failure in-band
        if output.get("success") is False:
            error = output.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            finished(False)
            return ToolResult(success=False, output=output, error=f"{name} failed. Error: {error}")

        finished(True)
        return ToolResult(success=True, output=output)
