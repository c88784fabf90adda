"""Tool definitions and dispatch for vizql-harness."""

from vizql_harness.tools.definitions import TOOL_DEFINITIONS, ToolDefinition, tool_schemas

__all__ = ["TOOL_DEFINITIONS", "ToolDefinition", "tool_schemas"]
