"""Model gateway client and stream accumulation for vizql-harness."""

from vizql_harness.llm.accumulator import ChunkAccumulator, collect_tool_calls, relay_answer
from vizql_harness.llm.client import ModelClient

__all__ = ["ChunkAccumulator", "ModelClient", "collect_tool_calls", "relay_answer"]
