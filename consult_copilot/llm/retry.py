"""Token-budget escalation for truncated completions."""

import math
from dataclasses import dataclass
from typing import Awaitable, Callable

from consult_copilot.llm.types import LLMResponse
from consult_copilot.logging import get_logger

log = get_logger(__name__)


@dataclass
class ContentRetryResult:
    content: str
    result: LLMResponse | None


async def call_with_content_retry(
    label: str,
    initial_tokens: int,
    call_factory: Callable[[int], Awaitable[LLMResponse]],
    max_tokens: int | None = None,
    max_attempts: int = 3,
) -> ContentRetryResult:
    """Re-issue a completion with a larger budget while it comes back truncated.

    A retry only happens when the response text is empty and the provider
    reported ``finish_reason == "length"``. Each retry grows the budget by
    the larger of 50% or 500 tokens, capped at ``max_tokens``.
    """
    ceiling = max_tokens if max_tokens is not None else initial_tokens * 2
    tokens = initial_tokens
    last: LLMResponse | None = None

    for attempt in range(max_attempts):
        last = await call_factory(tokens)
        content = (last.content or "").strip()
        if content:
            return ContentRetryResult(content=content, result=last)

        if last.finish_reason != "length" or tokens >= ceiling:
            return ContentRetryResult(content=content, result=last)

        next_tokens = min(max(tokens + math.ceil(tokens * 0.5), tokens + 500), ceiling)
        if next_tokens <= tokens:
            return ContentRetryResult(content=content, result=last)

        tokens = next_tokens
        log.warning(
            "Retrying truncated completion with larger budget",
            label=label,
            attempt=attempt + 1,
            max_tokens=tokens,
            finish_reason=last.finish_reason,
        )

    return ContentRetryResult(content=((last.content if last else None) or "").strip(), result=last)


def truncate_for_prompt(text: str, max_chars: int, label: str) -> str:
    """Clip long source text before it is embedded in a drafting prompt."""
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n\n[Truncated {label} to {max_chars} characters]"
