"""Conversation and provider value types."""

import json
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]
ToolStatus = Literal["success", "error", "blocked"]
ToolChoice = Literal["auto", "none"] | dict[str, Any]


@dataclass
class ToolCall:
    """A tool call emitted by the model.

    ``name`` is the provider-safe name and ``arguments`` the raw JSON string,
    exactly as the provider returned them.
    """

    id: str
    name: str
    arguments: str = "{}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any], index: int = 0) -> "ToolCall":
        function = payload.get("function") or {}
        arguments = function.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=str(payload.get("id") or f"call_{index}"),
            name=str(function.get("name", "")),
            arguments=arguments,
        )


@dataclass
class ToolStatusMeta:
    """Display metadata attached to tool result messages."""

    label: str
    status: ToolStatus
    summary: str
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "tool_status",
            "label": self.label,
            "status": self.status,
            "summary": self.summary,
        }
        if self.detail is not None:
            data["detail"] = self.detail
        return data


@dataclass
class Message:
    """A message in the conversation."""

    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    meta: ToolStatusMeta | None = None

    def to_payload(self) -> dict[str, Any]:
        """Provider wire format. Status metadata stays local."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_payload() for call in self.tool_calls]
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.name and self.role == "tool":
            payload["name"] = self.name
        return payload

    def to_dict(self) -> dict[str, Any]:
        """Transcript format returned to callers."""
        data = self.to_payload()
        if self.name and "name" not in data:
            data["name"] = self.name
        if self.meta is not None:
            data["meta"] = self.meta.to_dict()
        return data

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Message":
        raw_calls = payload.get("tool_calls") or None
        tool_calls = None
        if isinstance(raw_calls, list):
            tool_calls = [
                ToolCall.from_payload(item, index)
                for index, item in enumerate(raw_calls)
                if isinstance(item, dict)
            ]
        meta = None
        raw_meta = payload.get("meta")
        if isinstance(raw_meta, dict) and raw_meta.get("status") in ("success", "error", "blocked"):
            meta = ToolStatusMeta(
                label=str(raw_meta.get("label", "")),
                status=raw_meta["status"],
                summary=str(raw_meta.get("summary", "")),
                detail=raw_meta.get("detail"),
            )
        content = payload.get("content")
        return cls(
            role=payload.get("role", "user"),
            content=content if content is None or isinstance(content, str) else json.dumps(content),
            tool_calls=tool_calls,
            tool_call_id=payload.get("tool_call_id"),
            name=payload.get("name"),
            meta=meta,
        )


@dataclass
class LLMResponse:
    """Normalized chat-completion result."""

    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    raw_response: Any = None
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
