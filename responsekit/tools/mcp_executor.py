"""
MCP-based tool executor.

Runs functions on an MCP server subprocess, talking JSON-RPC over stdio.
"""

from typing import Any

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client

from responsekit.config.logging import get_logger
from responsekit.config.settings import ToolSettings
from responsekit.tools.base import ToolExecutor

logger = get_logger(__name__)


class McpToolExecutor(ToolExecutor):
    """
    Tool executor that forwards calls to an MCP server.

    Args:
        command: Executable that starts the server (e.g. "node")
        args: Arguments for the command (e.g. the server script path)
    """

    def __init__(self, command: str, args: list[str] | None = None):
        self._command = command
        self._args = list(args or [])
        self._initialized = False
        self._session = None
        self._stdio_context = None
        self._session_context = None

    @classmethod
    def from_settings(cls, settings: ToolSettings) -> "McpToolExecutor":
        if not settings.mcp_server_command:
            raise ValueError(
                "MCP server command not configured. Set TOOL_MCP_SERVER_COMMAND in your environment."
            )
        return cls(settings.mcp_server_command, settings.mcp_server_args)

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Start the MCP server subprocess and perform the handshake."""
        if self._initialized:
            return

        server_params = StdioServerParameters(command=self._command, args=self._args)

        self._stdio_context = stdio_client(server_params)
        read_stream, write_stream = await self._stdio_context.__aenter__()

        self._session_context = ClientSession(read_stream, write_stream)
        self._session = await self._session_context.__aenter__()
        await self._session.initialize()

        self._initialized = True
        logger.info(f"MCP tool server started: {self._command} {' '.join(self._args)}")

    async def shutdown(self) -> None:
        """Close the session and terminate the server subprocess."""
        if not self._initialized:
            return

        if self._session_context is not None:
            await self._session_context.__aexit__(None, None, None)
            self._session_context = None
            self._session = None

        if self._stdio_context is not None:
            await self._stdio_context.__aexit__(None, None, None)
            self._stdio_context = None

        self._initialized = False
        logger.info("MCP tool server stopped")

    async def execute(self, function_name: str, arguments: dict[str, Any]) -> Any:
        """
        Call a tool on the MCP server.

        Returns:
            The text content blocks joined with spaces

        Raises:
            RuntimeError: If the executor is not initialized or the tool reports an error
        """
        if not self._initialized:
            raise RuntimeError("Tool executor not initialized")

        result = await self._session.call_tool(function_name, arguments)

        # MCP returns content as a list of blocks; only text blocks are forwarded.
        text_parts = [content.text for content in result.content if hasattr(content, "text")]
        text = " ".join(text_parts)

        if getattr(result, "isError", False):
            raise RuntimeError(text or f"Tool '{function_name}' failed")
        return text

    async def list_tools(self) -> list[dict[str, Any]]:
        if not self._initialized:
            raise RuntimeError("Tool executor not initialized")

        result = await self._session.list_tools()
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.inputSchema,
            }
            for tool in result.tools
        ]
