"""Custom exceptions for the consulting copilot."""

from typing import Any, Literal

ErrorKind = Literal[
    "config",
    "auth",
    "bad_request",
    "rate_limit",
    "server",
    "connection",
    "unknown",
]


class CopilotError(Exception):
    """Base exception for the copilot core."""

    pass


class ConfigurationError(CopilotError):
    """Configuration-related errors (registry collisions, bad wiring)."""

    pass


class CopilotLLMError(CopilotError):
    """Classified error surfaced by the provider client or the guardrails."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = "unknown",
        status: int | None = None,
        detail: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status = status
        self.detail = detail

    @property
    def retryable(self) -> bool:
        """Transport-level failures the provider client may retry."""
        return self.kind in ("rate_limit", "server", "connection")

    def to_payload(self) -> dict[str, Any]:
        """Error body returned to HTTP callers; the status travels separately."""
        return {"error": self.message, "kind": self.kind, "detail": self.detail}


class MutationRateLimitError(CopilotLLMError):
    """Internal mutation throttle tripped for a tool/entity pair."""

    def __init__(self, tool_name: str, count: int, entity_id: str):
        super().__init__(
            f"Slow down: {tool_name} already ran {count} times in the last minute for this record.",
            kind="rate_limit",
            status=429,
        )
        self.tool_name = tool_name
        self.entity_id = entity_id


class ToolError(CopilotError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool handler was aborted or timed out."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool {tool_name} is not registered.")
        self.tool_name = tool_name


class StageLockedError(CopilotError):
    """Domain service refused a write because the entity is read-only."""

    pass


def normalize_copilot_error(error: BaseException) -> CopilotLLMError:
    """Map any exception onto the copilot error taxonomy."""
    if isinstance(error, CopilotLLMError):
        return error
    if isinstance(error, StageLockedError):
        return CopilotLLMError(str(error), kind="bad_request", status=409)
    if isinstance(error, ConfigurationError):
        return CopilotLLMError(str(error), kind="config")
    message = str(error) or "Unknown LLM error"
    return CopilotLLMError(message, kind="unknown")
