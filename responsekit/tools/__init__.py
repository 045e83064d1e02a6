"""
Tool executors.

Run the functions a model requests mid-response:

- FunctionToolExecutor: Python callables registered in-process
- McpToolExecutor: tools served by an MCP server over stdio
"""

from responsekit.tools.base import ToolExecutor, UnknownToolError
from responsekit.tools.function_executor import FunctionToolExecutor
from responsekit.tools.mcp_executor import McpToolExecutor

__all__ = [
    "ToolExecutor",
    "UnknownToolError",
    "FunctionToolExecutor",
    "McpToolExecutor",
]
