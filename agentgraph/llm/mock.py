"""Deterministic LLM provider for local runs and tests."""

from collections.abc import Callable
from typing import Any

from agentgraph.llm.provider import LLMProvider, LLMResponse


class MockLLMProvider(LLMProvider):
    """
    Returns canned responses without calling any API.

    With ``responses`` the provider cycles through them in order; with a
    ``responder`` callable the content is computed from the prompt; otherwise
    the last user message is echoed back.
    """

    def __init__(
        self,
        responses: list[str] | None = None,
        responder: Callable[[str], str] | None = None,
        model: str = "mock",
    ):
        self.responses = list(responses or [])
        self.responder = responder
        self.model = model
        self.calls: list[dict[str, Any]] = []

    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        model: str | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        prompt = str(messages[-1]["content"]) if messages else ""
        self.calls.append({"messages": messages, "system": system, "model": model})

        if self.responses:
            content = self.responses[(len(self.calls) - 1) % len(self.responses)]
        elif self.responder is not None:
            content = self.responder(prompt)
        else:
            content = prompt

        return LLMResponse(
            content=content,
            model=model or self.model,
            input_tokens=len(prompt.split()),
            output_tokens=len(content.split()),
            stop_reason="end_turn",
        )
