"""MCP client-side tool execution."""
from .executor import McpToolExecutor, content_to_blocks

__all__ = ["McpToolExecutor", "content_to_blocks"]
