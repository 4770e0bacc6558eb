"""LLM provider abstraction."""

from agentgraph.llm.mock import MockLLMProvider
from agentgraph.llm.provider import LLMProvider, LLMResponse

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "MockLLMProvider",
]
