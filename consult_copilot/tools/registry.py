"""Tool registry, tool result model and provider-name mapping."""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from pydantic import BaseModel

from consult_copilot.config import get_config
from consult_copilot.exceptions import (
    ConfigurationError,
    ToolExecutionError,
    ToolNotFoundError,
)
from consult_copilot.logging import get_logger
from consult_copilot.tools.names import ToolName

log = get_logger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_tool_name(name: ToolName | str) -> str:
    """Provider-safe function name: every char outside ``[A-Za-z0-9_-]`` becomes ``_``."""
    value = name.value if isinstance(name, ToolName) else str(name)
    return _UNSAFE_NAME_CHARS.sub("_", value)


class ToolResult(BaseModel):
    """Result from a tool handler."""

    content: str = ""
    raw: Any = None
    finish_reason: str | None = None


ToolHandler = Callable[[Any], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolDefinition:
    """Registry entry. The provider-safe name is computed once."""

    name: ToolName
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler
    provider_name: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "provider_name", sanitize_tool_name(self.name))

    def parameters(self) -> dict[str, Any]:
        """JSON schema of the input model, with camelCase aliases."""
        schema = self.input_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return schema

    def get_definition(self) -> dict[str, Any]:
        """OpenAI function-tool definition."""
        return {
            "type": "function",
            "function": {
                "name": self.provider_name,
                "description": self.description,
                "parameters": self.parameters(),
            },
        }


class ToolRegistry:
    """Registry for the tool catalog.

    Built once at startup and read-only afterwards. Registration fails fast on
    duplicate internal names and on provider-name collisions.
    """

    def __init__(self) -> None:
        self._tools: dict[ToolName, ToolDefinition] = {}
        self._provider_names: dict[str, ToolName] = {}

    def register(self, definition: ToolDefinition) -> None:
        """Register a tool definition.

        Raises:
            ConfigurationError if the name or its sanitized form is already taken
        """
        if definition.name in self._tools:
            raise ConfigurationError(f"Tool {definition.name.value} is already registered.")
        existing = self._provider_names.get(definition.provider_name)
        if existing is not None:
            raise ConfigurationError(
                f"Tools {existing.value} and {definition.name.value} both map to "
                f"provider name {definition.provider_name}."
            )

        log.debug("Registering tool", tool=definition.name.value, provider_name=definition.provider_name)
        self._tools[definition.name] = definition
        self._provider_names[definition.provider_name] = definition.name

    def register_all(self, definitions: Iterable[ToolDefinition]) -> None:
        for definition in definitions:
            self.register(definition)

    def has_tool(self, name: ToolName | str) -> bool:
        parsed = ToolName.parse(name)
        return parsed is not None and parsed in self._tools

    def get(self, name: ToolName | str) -> ToolDefinition:
        """Get a tool definition by internal name.

        Raises:
            ToolNotFoundError if not found
        """
        parsed = ToolName.parse(name)
        if parsed is None or parsed not in self._tools:
            raise ToolNotFoundError(name.value if isinstance(name, ToolName) else str(name))
        return self._tools[parsed]

    def resolve(self, provider_name: str) -> str:
        """Map a provider-safe name back to its internal name.

        Unknown names come back unchanged so callers can report them.
        """
        internal = self._provider_names.get(provider_name)
        return internal.value if internal is not None else provider_name

    def list_tools(self) -> list[ToolName]:
        return list(self._tools)

    def list_for_provider(
        self, allowed: Iterable[ToolName | str] | None = None
    ) -> list[dict[str, Any]]:
        """Provider tool list, optionally filtered to an allowlist of internal names."""
        allowed_set: set[ToolName] | None = None
        if allowed is not None:
            allowed_set = {parsed for item in allowed if (parsed := ToolName.parse(item)) is not None}
        return [
            definition.get_definition()
            for name, definition in self._tools.items()
            if allowed_set is None or name in allowed_set
        ]

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
        except Exception:
            pass

    async def execute(
        self,
        name: ToolName | str,
        tool_input: BaseModel,
        abort_event: asyncio.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> ToolResult:
        """Run a tool handler with timeout and abort propagation.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if aborted, timed out or the handler returned garbage
        """
        definition = self.get(name)
        tool_name = definition.name.value
        if timeout_seconds is None:
            timeout_seconds = get_config().tools.timeout_seconds
        timeout_seconds = max(1.0, float(timeout_seconds))

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            execute_task = asyncio.create_task(definition.handler(tool_input))
            waiters: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                waiters.add(abort_wait_task)

            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(tool_name, "Tool returned invalid result payload")
                return result

            await self._cancel_task(execute_task)
            if abort_wait_task is not None and abort_wait_task in done:
                raise ToolExecutionError(tool_name, "Execution aborted")
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(tool_name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        finally:
            await self._cancel_task(abort_wait_task)
