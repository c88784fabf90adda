"""Tool service (MCP over HTTP) client for vizql-harness."""

from vizql_harness.mcp.client import ToolServiceClient
from vizql_harness.mcp.retry import RetryPolicy

__all__ = ["RetryPolicy", "ToolServiceClient"]
