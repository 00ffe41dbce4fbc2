"""Tool executor: turns model tool calls into tool-result messages."""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from consult_copilot.context_defaults import apply_context_defaults
from consult_copilot.exceptions import CopilotLLMError
from consult_copilot.guardrails import (
    REFRESH_ON_SUCCESS_TOOLS,
    GuardrailEngine,
    has_reached_stage,
)
from consult_copilot.llm.types import Message, ToolCall, ToolStatus, ToolStatusMeta
from consult_copilot.logging import get_logger
from consult_copilot.services import ExecutionContext
from consult_copilot.side_effects import SideEffectRegistry
from consult_copilot.tools.names import ToolName, format_tool_label
from consult_copilot.tools.registry import ToolRegistry, ToolResult

log = get_logger(__name__)

EMPTY_OUTPUT_PLACEHOLDER = "Tool executed successfully. No additional output was returned."

WBS_MUTATION_TOOLS = frozenset({ToolName.UPSERT_WBS_ITEMS, ToolName.REMOVE_WBS_ITEMS})


@dataclass
class NormalizedOutput:
    display_content: str
    raw_content: str
    parsed_content: Any


@dataclass
class ToolExecutionRecord:
    """Outcome of one tool call, used for logging and fallback replies."""

    name: str
    raw_content: str
    parsed_content: Any
    status: ToolStatus = "success"
    summary: str | None = None
    detail: str | None = None


@dataclass
class ToolExecutionBatch:
    """Everything one turn of tool calls produced, in causal order."""

    tool_messages: list[Message] = field(default_factory=list)
    side_effect_messages: list[Message] = field(default_factory=list)
    records: list[ToolExecutionRecord] = field(default_factory=list)
    should_refresh: bool = False

    @property
    def messages(self) -> list[Message]:
        return [*self.tool_messages, *self.side_effect_messages]

    @property
    def all_failed(self) -> bool:
        return bool(self.records) and all(record.status != "success" for record in self.records)

    def first_failure_summary(self) -> str | None:
        for record in self.records:
            if record.status != "success" and record.summary:
                return record.summary
        return None


def safe_json_parse(value: str | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return None


def truncate_text(value: str, max_length: int = 400) -> str:
    if len(value) <= max_length:
        return value
    return f"{value[: max_length - 1]}…"


def format_list_preview(items: list[str], limit: int = 3) -> str:
    if not items:
        return ""
    preview = items[:limit]
    remainder = len(items) - len(preview)
    suffix = f", plus {remainder} more" if remainder > 0 else ""
    return "; ".join(preview) + suffix


def normalize_tool_output(result: ToolResult) -> NormalizedOutput:
    """Display content: pretty JSON when parseable, raw text otherwise, placeholder when empty."""
    primary = result.content or ""
    fallback = ""
    if not primary and isinstance(result.raw, (dict, list)):
        try:
            fallback = json.dumps(result.raw, default=str)
        except (TypeError, ValueError):
            fallback = ""

    raw_content = (primary or fallback).strip()
    parsed = safe_json_parse(raw_content)

    if parsed is not None:
        display = json.dumps(parsed, indent=2, ensure_ascii=False)
    elif raw_content:
        display = raw_content
    else:
        display = EMPTY_OUTPUT_PLACEHOLDER
    return NormalizedOutput(display, raw_content, parsed)


def _stringify_error_detail(error: BaseException) -> str:
    if isinstance(error, ValidationError):
        return json.dumps(error.errors(include_url=False), indent=2, default=str)
    if isinstance(error, CopilotLLMError) and error.detail is not None:
        if isinstance(error.detail, str):
            return error.detail
        try:
            return json.dumps(error.detail, indent=2, default=str)
        except (TypeError, ValueError):
            return str(error.detail)
    return f"{type(error).__name__}: {error}"


def _validation_summary(error: ValidationError) -> str:
    issues = error.errors(include_url=False)
    if not issues:
        return "Invalid tool input."
    first = issues[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = str(first.get("msg", "Invalid tool input."))
    return f"{location}: {message}" if location else message


def build_tool_error_payload(
    tool: str,
    error: BaseException | None = None,
    summary: str | None = None,
) -> dict[str, Any]:
    """Uniform ``tool_error`` payload shown to the model and the user."""
    if summary is None:
        if isinstance(error, CopilotLLMError):
            summary = error.message
        elif isinstance(error, ValidationError):
            summary = _validation_summary(error)
        elif error is not None and str(error):
            summary = str(error)
        else:
            summary = f"Couldn't run {format_tool_label(tool)}."

    payload: dict[str, Any] = {"type": "tool_error", "tool": tool, "summary": summary}
    if error is not None and not (isinstance(error, CopilotLLMError) and error.detail is None):
        payload["detail"] = _stringify_error_detail(error)
    return payload


def _summarize_wbs_update(record: ToolExecutionRecord) -> str | None:
    parsed = record.parsed_content
    if not isinstance(parsed, dict) or not isinstance(parsed.get("items"), list):
        return None

    label = format_tool_label(record.name)
    items = parsed["items"]
    if not items:
        return f"{label}: Saved an empty WBS payload."

    lines: list[str] = []
    for item in items:
        item = item if isinstance(item, dict) else {}
        task = item.get("task") if isinstance(item.get("task"), str) else "Unnamed task"
        role = item.get("roleName") if isinstance(item.get("roleName"), str) else None
        if role is None and isinstance(item.get("roleId"), str):
            role = item["roleId"]
        hours_value = item.get("hours")
        hours = None
        if isinstance(hours_value, (int, float)) and not isinstance(hours_value, bool):
            hours = f"{round(hours_value, 2):g}h"
        lines.append(" · ".join(part for part in (task, role, hours) if part))

    preview = format_list_preview(lines)
    suffix = f" ({preview})" if preview else ""
    return f"{label}: Updated {len(items)} work item(s){suffix}."


def _summarize_record(record: ToolExecutionRecord) -> str:
    if record.summary:
        return record.summary

    label = format_tool_label(record.name)
    parsed = record.parsed_content
    if isinstance(parsed, dict) and parsed.get("type") == "tool_error":
        return f"{label} — {parsed.get('summary')}"

    if ToolName.parse(record.name) in WBS_MUTATION_TOOLS:
        wbs_summary = _summarize_wbs_update(record)
        if wbs_summary:
            return wbs_summary

    if isinstance(parsed, dict) and parsed:
        keys = [str(key) for key in parsed]
        preview = ", ".join(keys[:4]) + ", …" if len(keys) > 4 else ", ".join(keys)
        return f"{label} — responded with {preview}."

    if isinstance(parsed, list):
        return f"{label} — returned {len(parsed)} item(s)."

    if record.raw_content:
        return f"{label} — {truncate_text(record.raw_content, 120)}"

    return f"{label} — success."


def summarize_tool_executions(records: list[ToolExecutionRecord]) -> str:
    """Deterministic fallback reply: one line per tool call."""
    return "\n".join(line for line in (_summarize_record(record) for record in records) if line)


def log_tool_invocation(
    tool: str,
    context: ExecutionContext,
    status: ToolStatus,
    duration_ms: int | None = None,
    message: str | None = None,
) -> None:
    log_method = log.info if status == "success" else log.warning
    log_method(
        "Tool invocation",
        tool=tool,
        workflow=context.workflow,
        entity_id=context.entity_id,
        status=status,
        duration_ms=duration_ms,
        message=message,
    )


class ToolExecutor:
    """Run one turn of tool calls sequentially, in the order the model emitted them."""

    def __init__(
        self,
        registry: ToolRegistry,
        guardrails: GuardrailEngine,
        side_effects: SideEffectRegistry,
        tool_timeout_seconds: float | None = None,
    ):
        self.registry = registry
        self.guardrails = guardrails
        self.side_effects = side_effects
        self.tool_timeout_seconds = tool_timeout_seconds

    async def execute_tool_calls(
        self,
        tool_calls: list[ToolCall],
        context: ExecutionContext,
        abort_event: asyncio.Event | None = None,
    ) -> ToolExecutionBatch:
        batch = ToolExecutionBatch()
        for call in tool_calls:
            await self._execute_one(call, context, batch, abort_event)
        return batch

    async def _execute_one(
        self,
        call: ToolCall,
        context: ExecutionContext,
        batch: ToolExecutionBatch,
        abort_event: asyncio.Event | None,
    ) -> None:
        internal_name = self.registry.resolve(call.name)
        label = format_tool_label(internal_name)
        started = time.perf_counter()

        status: ToolStatus = "success"
        error_payload: dict[str, Any] | None = None
        output: NormalizedOutput | None = None

        try:
            raw_args = json.loads(call.arguments) if call.arguments.strip() else {}
        except json.JSONDecodeError as e:
            status = "error"
            error_payload = build_tool_error_payload(
                internal_name, e, summary=f"Invalid JSON arguments for {label}."
            )
        else:
            args = apply_context_defaults(raw_args, internal_name, context)
            decision = self.guardrails.evaluate_tool_call(internal_name, context)
            if not decision.allowed:
                status = decision.status
                error_payload = build_tool_error_payload(
                    internal_name, decision.error, summary=decision.reason
                )
            else:
                definition = self.registry.get(internal_name)
                try:
                    tool_input = definition.input_model.model_validate(args)
                    result = await self.registry.execute(
                        definition.name,
                        tool_input,
                        abort_event=abort_event,
                        timeout_seconds=self.tool_timeout_seconds,
                    )
                except Exception as e:
                    status = "error"
                    error_payload = build_tool_error_payload(internal_name, e)
                else:
                    output = normalize_tool_output(result)
                    side_effect_input = result.raw if result.raw is not None else result.content
                    outcome = await self.side_effects.run_all(
                        definition.name, tool_input, side_effect_input, context
                    )
                    batch.side_effect_messages.extend(outcome.messages)
                    if outcome.failures:
                        log.warning(
                            "Side effects failed",
                            tool=internal_name,
                            failures=outcome.failures,
                            entity_id=context.entity_id,
                        )
                    if outcome.should_refresh:
                        batch.should_refresh = True
                    refresh_stage = REFRESH_ON_SUCCESS_TOOLS.get(definition.name)
                    if refresh_stage is not None and has_reached_stage(context.stage, refresh_stage):
                        batch.should_refresh = True

        duration_ms = int((time.perf_counter() - started) * 1000)

        detail: str | None = None
        summary: str | None = None
        if error_payload is not None:
            summary = error_payload["summary"]
            detail = error_payload.get("detail")
            output = NormalizedOutput(
                display_content=json.dumps(error_payload, ensure_ascii=False),
                raw_content=detail or summary,
                parsed_content=error_payload,
            )
            log_tool_invocation(internal_name, context, status, duration_ms, summary)
        else:
            log_tool_invocation(internal_name, context, status, duration_ms)

        assert output is not None
        record = ToolExecutionRecord(
            name=internal_name,
            raw_content=output.raw_content,
            parsed_content=output.parsed_content,
            status=status,
            summary=summary,
            detail=detail,
        )
        record.summary = summarize_tool_executions([record]) or f"{label} — {status}."
        batch.records.append(record)

        batch.tool_messages.append(
            Message(
                role="tool",
                content=output.display_content,
                tool_call_id=call.id,
                name=internal_name,
                meta=ToolStatusMeta(label=label, status=status, summary=record.summary, detail=detail),
            )
        )
