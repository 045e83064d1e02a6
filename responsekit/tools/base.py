"""
Base classes for tool executors.

A tool executor runs the functions a model asks for mid-response. Executors
are pluggable: a registry of Python callables, an MCP server, or anything
else that can map a function name and arguments to a result.
"""

from abc import ABC, abstractmethod
from typing import Any


class UnknownToolError(LookupError):
    """Raised when an executor has no function with the requested name."""


class ToolExecutor(ABC):
    """
    Abstract base class for tool executors.

    execute() may raise any exception; the orchestrator records it on the
    tool call and feeds an error payload back to the model instead of
    aborting the exchange.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the executor.

        This may involve starting subprocesses, establishing connections,
        or performing handshakes with external services.

        Raises:
            ConnectionError: If initialization fails
        """
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Release connections, subprocesses and other resources."""
        pass

    @abstractmethod
    async def execute(self, function_name: str, arguments: dict[str, Any]) -> Any:
        """
        Run one function call.

        Args:
            function_name: Name the model asked for
            arguments: Decoded call arguments

        Returns:
            Any JSON-serializable result (strings are sent to the model as-is)

        Raises:
            UnknownToolError: If function_name is not provided by this executor
        """
        pass

    @abstractmethod
    async def list_tools(self) -> list[dict[str, Any]]:
        """
        List the functions this executor provides.

        Returns:
            Schemas with name, description and input_schema, e.g.
            [{"name": "get_weather", "description": "...", "input_schema": {...}}]
        """
        pass

    async def function_tools(self) -> list[dict[str, Any]]:
        """list_tools() converted to the response API's function tool format."""
        return [
            {
                "type": "function",
                "name": tool["name"],
                "description": tool.get("description") or "",
                "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
            }
            for tool in await self.list_tools()
        ]

    async def __aenter__(self):
        """Context manager entry - initialize the executor."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - shutdown the executor."""
        await self.shutdown()
        return False
