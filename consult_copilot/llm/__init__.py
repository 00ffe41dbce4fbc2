"""LLM provider abstraction and the chat-completions provider client."""

from consult_copilot.config import LLMConfig, get_config
from consult_copilot.llm.base import LLMProvider
from consult_copilot.llm.chat_completions import ChatCompletionsProvider
from consult_copilot.llm.types import (
    LLMResponse,
    Message,
    Role,
    ToolCall,
    ToolChoice,
    ToolStatus,
    ToolStatusMeta,
)


def create_provider(config: LLMConfig | None = None) -> LLMProvider:
    """Create the chat-completions provider.

    Args:
        config: Provider settings; defaults to the global config's ``llm`` block

    Returns:
        Configured LLMProvider instance
    """
    if config is None:
        config = get_config().llm
    return ChatCompletionsProvider(config=config)


__all__ = [
    "ChatCompletionsProvider",
    "LLMProvider",
    "LLMResponse",
    "Message",
    "Role",
    "ToolCall",
    "ToolChoice",
    "ToolStatus",
    "ToolStatusMeta",
    "create_provider",
]
