"""Concrete implementations for tool handlers."""

import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .models import ToolCall, ToolResult

logger = logging.getLogger(__name__)

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


class Tool(ABC):
    """Interface for executing agentic tools."""

    @abstractmethod
    def get_tools(self) -> List[Dict[str, Any]]:
        """Returns a list of tool specifications for the LLM."""
        return []

    @abstractmethod
    async def execute(self, name: str, arguments: str) -> str:
        """Runs the named tool and returns its result as text.

        Never raises: unknown tools and failures come back as error strings
        so the model can read them and recover.

        Parameters
        ----------
        name : str
            The function name requested by the model.
        arguments : str
            The JSON-encoded arguments, exactly as streamed.

        Returns
        -------
        str
            The tool output, or a message starting with ``"Error"``.
        """
        pass

    async def execute_tool_call(self, tool_call: ToolCall) -> ToolResult:
        content = await self.execute(tool_call.function_name, tool_call.function_args)
        return ToolResult(
            tool_call_id=tool_call.id,
            function_name=tool_call.function_name,
            content=content,
            is_error=content.startswith("Error"),
        )


class NoTool(Tool):
    """Default handler that provides no tools."""

    def get_tools(self) -> List[Dict[str, Any]]:
        return []

    async def execute(self, name, arguments):
        return f"Error: Unknown tool '{name}'"


class PythonTool(Tool):
    """Exposes plain or async Python callables as tools.

    The JSON schema of each tool is derived from the callable's signature and
    its docstring's first paragraph becomes the description.
    """

    def __init__(self, functions: Optional[List[Callable]] = None):
        self._registry: Dict[str, Callable] = {}
        for func in functions or []:
            self.register_function(func)

    def register_function(self, func: Callable) -> None:
        if not callable(func):
            raise ValueError(f"{func!r} is not callable")
        self._registry[func.__name__] = func

    def get_tools(self) -> List[Dict[str, Any]]:
        return [self._generate_schema(func) for func in self._registry.values()]

    @staticmethod
    def _generate_schema(func: Callable) -> Dict[str, Any]:
        properties = {}
        required = []
        for param in inspect.signature(func).parameters.values():
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                continue
            properties[param.name] = {"type": _JSON_TYPES.get(param.annotation, "string")}
            if param.default is inspect.Parameter.empty:
                required.append(param.name)

        doc = inspect.getdoc(func) or ""
        return {
            "type": "function",
            "function": {
                "name": func.__name__,
                "description": doc.split("\n\n")[0],
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": required,
                },
            },
        }

    async def execute(self, name, arguments):
        func = self._registry.get(name)
        if func is None:
            logger.warning("Model requested unknown tool %s", name)
            return f"Error: Unknown tool '{name}'"

        try:
            kwargs = json.loads(arguments) if arguments.strip() else {}
            if not isinstance(kwargs, dict):
                raise ValueError("arguments must be a JSON object")
            if inspect.iscoroutinefunction(func):
                result = await func(**kwargs)
            else:
                result = func(**kwargs)
        except Exception as e:
            logger.info("Tool %s failed: %s", name, e)
            return f"Error executing {name}: {e}"

        if isinstance(result, str):
            return result
        try:
            return json.dumps(result)
        except (TypeError, ValueError):
            return str(result)
