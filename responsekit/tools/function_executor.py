"""
In-process tool executor backed by plain Python callables.

Example:
    >>> tools = FunctionToolExecutor()
    >>> tools.register("get_weather", get_weather, "Current weather for a city",
    ...                {"type": "object", "properties": {"city": {"type": "string"}}})
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

from responsekit.config.logging import get_logger
from responsekit.tools.base import ToolExecutor, UnknownToolError

logger = get_logger(__name__)


@dataclass
class RegisteredFunction:
    func: Callable[..., Any]
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class FunctionToolExecutor(ToolExecutor):
    """
    Registry of sync or async callables, invoked with keyword arguments.

    Args:
        functions: Optional initial mapping of name to callable
    """

    def __init__(self, functions: dict[str, Callable[..., Any]] | None = None):
        self._functions: dict[str, RegisteredFunction] = {}
        for name, func in (functions or {}).items():
            self.register(name, func)

    def register(
        self,
        name: str,
        func: Callable[..., Any],
        description: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> None:
        if not name:
            raise ValueError("Function name cannot be empty")
        entry = RegisteredFunction(func, description or (inspect.getdoc(func) or ""))
        if parameters is not None:
            entry.parameters = parameters
        self._functions[name] = entry
        logger.debug(f"Registered function tool '{name}'")

    def __contains__(self, name: str) -> bool:
        return name in self._functions

    async def initialize(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    async def execute(self, function_name: str, arguments: dict[str, Any]) -> Any:
        entry = self._functions.get(function_name)
        if entry is None:
            raise UnknownToolError(f"Function handler not found: {function_name}")

        result = entry.func(**arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def list_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "name": name,
                "description": entry.description,
                "input_schema": entry.parameters,
            }
            for name, entry in self._functions.items()
        ]
