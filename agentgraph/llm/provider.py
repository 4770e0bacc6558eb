"""LLM Provider abstraction for pluggable LLM backends."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class LLMResponse:
    """Response from an LLM call."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    raw_response: Any = None


class LLMProvider(ABC):
    """
    Abstract LLM provider - plug in any LLM backend.

    ai-prompt steps only depend on this interface. Implementations should handle:
    - API authentication
    - Request/response formatting
    - Token counting
    """

    @abstractmethod
    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        model: str | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation history [{role: "user"|"assistant", content: str}]
            system: System prompt
            max_tokens: Maximum tokens to generate
            model: Optional model override
            temperature: Optional sampling temperature

        Returns:
            LLMResponse with content and metadata
        """
        pass

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        model: str | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """
        Async completion.

        Default implementation runs complete() in a worker thread so blocking
        SDK clients do not stall the event loop. Subclasses with native async
        clients SHOULD override.
        """
        return await asyncio.to_thread(
            self.complete,
            messages=messages,
            system=system,
            max_tokens=max_tokens,
            model=model,
            temperature=temperature,
        )
