"""Chat-completions provider - direct HTTP calls to an OpenAI-compatible API."""

import asyncio
import json
import math
from typing import Any, Awaitable, Callable, Literal

import httpx
from pydantic import BaseModel, ValidationError

from consult_copilot.config import API_KEY_ENV_FALLBACKS, LLMConfig
from consult_copilot.exceptions import CopilotLLMError, ErrorKind
from consult_copilot.llm.base import LLMProvider
from consult_copilot.llm.types import LLMResponse, Message, ToolCall, ToolChoice
from consult_copilot.logging import get_logger

log = get_logger(__name__)


RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503})


class _FunctionPayload(BaseModel):
    name: str
    arguments: str


class _ToolCallPayload(BaseModel):
    id: str | None = None
    type: str | None = None
    function: _FunctionPayload


class _MessagePayload(BaseModel):
    content: Any = None
    tool_calls: list[_ToolCallPayload] | None = None
    refusal: str | None = None
    annotations: Any = None


class _ChoicePayload(BaseModel):
    message: _MessagePayload
    finish_reason: str | None = None


class _LegacyOutputPayload(BaseModel):
    content: str | None = None


class _CompletionTokenDetails(BaseModel):
    reasoning_tokens: int | None = None


class _UsagePayload(BaseModel):
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    completion_tokens_details: _CompletionTokenDetails | None = None


class ChatCompletionPayload(BaseModel):
    """Accepted upstream response shape, including legacy top-level fields."""

    id: str | None = None
    model: str | None = None
    choices: list[_ChoicePayload] | None = None
    output_text: str | None = None
    output: list[_LegacyOutputPayload] | None = None
    content: str | None = None
    usage: _UsagePayload | None = None


class _RequestCancelled(Exception):
    """Caller-supplied cancel event fired while a request was in flight."""


def _part_text(part: Any) -> str:
    if not part:
        return ""
    if isinstance(part, str):
        return part
    if isinstance(part, dict):
        for key in ("text", "content", "value"):
            if isinstance(part.get(key), str):
                return part[key]
    return ""


def extract_content(payload: ChatCompletionPayload) -> str | None:
    """Collapse every supported response shape into a single string or None."""
    choice = payload.choices[0] if payload.choices else None
    raw_content: Any = choice.message.content if choice else None

    if raw_content is None and payload.output_text:
        raw_content = payload.output_text
    elif raw_content is None and payload.output and payload.output[0].content is not None:
        raw_content = payload.output[0].content
    elif raw_content is None and payload.content:
        raw_content = payload.content

    if raw_content is None:
        return None
    if isinstance(raw_content, str):
        return raw_content
    if isinstance(raw_content, list):
        joined = "".join(_part_text(part) for part in raw_content).strip()
        return joined or None
    if isinstance(raw_content, dict) and isinstance(raw_content.get("text"), str):
        return raw_content["text"]

    try:
        stringified = json.dumps(raw_content)
    except (TypeError, ValueError):
        return str(raw_content)
    log.warning(
        "Unexpected content shape; stringified",
        type=type(raw_content).__name__,
        preview=stringified[:200],
    )
    return stringified


def estimate_prompt_stats(messages: list[Message]) -> dict[str, int]:
    """Rough prompt size: characters and ~4 chars per token."""
    characters = len("\n\n".join(message.content or "" for message in messages))
    return {
        "characters": characters,
        "tokens": math.ceil(characters / 4) if characters else 0,
    }


def classify_status(status: int) -> ErrorKind:
    """Map an upstream HTTP status onto the error taxonomy."""
    if status == 401:
        return "auth"
    if status == 429:
        return "rate_limit"
    if 400 <= status < 500:
        return "bad_request"
    if status >= 500:
        return "server"
    return "unknown"


class ChatCompletionsProvider(LLMProvider):
    """OpenAI-compatible ``/chat/completions`` client with retries and timeouts."""

    def __init__(
        self,
        config: LLMConfig | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        """Initialize the provider.

        Args:
            config: Provider settings (model, base URL, timeout, retries)
            client: Optional pre-built httpx client (tests pass a MockTransport)
            sleep: Backoff sleeper, ``asyncio.sleep`` by default
        """
        self.config = config or LLMConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self.model = self.config.model
        self.timeout_seconds = float(self.config.timeout_seconds)
        self.max_retries = max(0, int(self.config.max_retries))
        self.retry_backoff_seconds = float(self.config.retry_backoff_seconds)
        self.telemetry = bool(self.config.telemetry)
        self.client = client or httpx.AsyncClient(timeout=None, follow_redirects=True)
        self._sleep = sleep or asyncio.sleep

    def _ensure_api_key(self) -> str:
        api_key = self.config.resolved_api_key()
        if not api_key:
            raise CopilotLLMError(
                "OPENAI_API_KEY is not configured.",
                kind="config",
                detail={"env": list(API_KEY_ENV_FALLBACKS)},
            )
        return api_key

    def _build_body(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        tool_choice: ToolChoice | None,
        max_tokens: int,
        temperature: float | None,
        response_format: str,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_payload() for message in messages],
            "max_tokens": max_tokens,
        }
        if temperature is not None:
            body["temperature"] = temperature
        if response_format == "json_object":
            body["response_format"] = {"type": "json_object"}
        if tools:
            body["tools"] = tools
        if tool_choice:
            body["tool_choice"] = tool_choice
        return body

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _post_once(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        cancel_event: asyncio.Event | None,
    ) -> httpx.Response:
        """Send one attempt under the wall-clock timeout."""
        request_task = asyncio.create_task(self.client.post(url, json=body, headers=headers))
        cancel_task: asyncio.Task[Any] | None = None
        waiters: set[asyncio.Task[Any]] = {request_task}
        if cancel_event is not None:
            cancel_task = asyncio.create_task(cancel_event.wait())
            waiters.add(cancel_task)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if request_task in done:
                return request_task.result()
            if cancel_task is not None and cancel_task in done:
                raise _RequestCancelled()
            if self.telemetry:
                log.warning("Aborted LLM request after timeout", timeout_seconds=self.timeout_seconds)
            raise CopilotLLMError("LLM call timed out", kind="connection")
        finally:
            await self._cancel_task(request_task)
            await self._cancel_task(cancel_task)

    async def _post_with_retry(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        cancel_event: asyncio.Event | None,
    ) -> httpx.Response:
        """POST with exponential backoff on 429/5xx and transport failures."""
        retries_left = self.max_retries
        backoff = self.retry_backoff_seconds
        while True:
            try:
                response = await self._post_once(url, body, headers, cancel_event)
            except _RequestCancelled:
                raise CopilotLLMError("LLM request was cancelled", kind="connection")
            except (httpx.TransportError, CopilotLLMError) as e:
                error = e if isinstance(e, CopilotLLMError) else CopilotLLMError(
                    str(e) or "LLM network error", kind="connection"
                )
                if not error.retryable or retries_left <= 0:
                    if error is e:
                        raise
                    raise error from e
                log.warning(
                    "LLM network error, retrying",
                    error=str(e),
                    backoff_seconds=backoff,
                    retries_left=retries_left,
                )
            else:
                if response.is_success:
                    return response
                if response.status_code not in RETRYABLE_STATUS_CODES or retries_left <= 0:
                    return response
                log.warning(
                    "LLM request failed, retrying",
                    status=response.status_code,
                    backoff_seconds=backoff,
                    retries_left=retries_left,
                )

            await self._sleep(backoff)
            retries_left -= 1
            backoff *= 2

    def _raise_for_upstream_error(self, response: httpx.Response) -> None:
        try:
            error_payload: Any = response.json()
        except ValueError:
            error_payload = response.text

        status = response.status_code
        message = f"LLM request failed with status {status}"
        if isinstance(error_payload, dict):
            error_obj = error_payload.get("error")
            if isinstance(error_obj, dict) and isinstance(error_obj.get("message"), str):
                message = error_obj["message"]

        kind = classify_status(status)
        if status == 404 and "model" not in message:
            message = (
                f"LLM model '{self.model}' was not found. Check the configured model "
                "name and your base URL configuration."
            )

        log.error("LLM upstream error", status=status, kind=kind, message=message)
        raise CopilotLLMError(message, kind=kind, status=status, detail=error_payload)

    def _parse_payload(self, response: httpx.Response) -> ChatCompletionPayload:
        try:
            raw_data = response.json()
        except ValueError as e:
            raise CopilotLLMError(
                "Invalid LLM response structure",
                kind="server",
                detail={"validation": str(e), "raw": response.text},
            ) from e
        try:
            return ChatCompletionPayload.model_validate(raw_data)
        except ValidationError as e:
            log.error("LLM response schema validation failed", errors=e.errors())
            raise CopilotLLMError(
                "Invalid LLM response structure",
                kind="server",
                detail={"validation": e.errors(), "raw": raw_data},
            ) from e

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
        """Send one chat-completion request and normalize the answer."""
        api_key = self._ensure_api_key()

        payload_messages = list(messages)
        if system_prompt:
            payload_messages.insert(0, Message(role="system", content=system_prompt))

        effective_max_tokens = max_tokens or self.config.max_output_tokens
        effective_temperature = self.config.temperature if temperature is None else temperature
        body = self._build_body(
            payload_messages,
            tools,
            tool_choice,
            effective_max_tokens,
            effective_temperature,
            response_format,
        )
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        url = f"{self.base_url}/chat/completions"

        if self.telemetry:
            log.info(
                "LLM request",
                model=self.model,
                timeout_seconds=self.timeout_seconds,
                max_tokens=effective_max_tokens,
                messages=len(payload_messages),
                **estimate_prompt_stats(payload_messages),
                has_tools=bool(tools),
                has_tool_choice=bool(tool_choice),
                response_format=response_format,
            )

        try:
            response = await self._post_with_retry(url, body, headers, cancel_event)
            if not response.is_success:
                self._raise_for_upstream_error(response)
            data = self._parse_payload(response)
        except CopilotLLMError:
            raise
        except Exception as e:
            raise CopilotLLMError(str(e) or "Unknown LLM error", kind="connection") from e

        choice = data.choices[0] if data.choices else None
        content = extract_content(data)
        tool_calls = [
            ToolCall(
                id=call.id or f"call_{index}",
                name=call.function.name,
                arguments=call.function.arguments,
            )
            for index, call in enumerate((choice.message.tool_calls if choice else None) or [])
        ]
        finish_reason = choice.finish_reason if choice else None

        usage: dict[str, int] = {}
        if data.usage is not None:
            if data.usage.prompt_tokens is not None:
                usage["prompt_tokens"] = data.usage.prompt_tokens
            if data.usage.completion_tokens is not None:
                usage["completion_tokens"] = data.usage.completion_tokens

        if self.telemetry:
            log.info(
                "LLM response",
                finish_reason=finish_reason,
                has_tool_calls=bool(tool_calls),
            )
            if not content:
                log.warning(
                    "Empty assistant content payload",
                    finish_reason=finish_reason,
                    refusal=choice.message.refusal if choice else None,
                    completion_tokens=usage.get("completion_tokens"),
                )

        return LLMResponse(
            content=content,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            raw_response=data.model_dump(),
            model=data.model or self.model,
            usage=usage,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
