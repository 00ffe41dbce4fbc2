"""Abstract provider interface."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Literal

from consult_copilot.llm.types import LLMResponse, Message, ToolChoice


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        *,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        response_format: Literal["text", "json_object"] = "text",
        cancel_event: asyncio.Event | None = None,
    ) -> LLMResponse:
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None
