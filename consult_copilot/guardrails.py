"""Workflow allowlists, stage gating and the mutation throttle."""

import time
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from consult_copilot.config import get_config
from consult_copilot.exceptions import MutationRateLimitError
from consult_copilot.llm.types import ToolStatus
from consult_copilot.logging import get_logger
from consult_copilot.services import ExecutionContext, Stage, Workflow
from consult_copilot.tools.names import ToolName, format_tool_label
from consult_copilot.tools.registry import ToolRegistry

log = get_logger(__name__)


def _tools_in(*namespaces: str) -> frozenset[ToolName]:
    return frozenset(name for name in ToolName if name.namespace in namespaces)


ESTIMATE_TOOLS = _tools_in("estimates", "quote", "roles")
CONTRACT_TOOLS = _tools_in("contracts") | {
    ToolName.GET_PROJECT_DETAILS,
    ToolName.SEARCH_PROJECTS,
}

ESTIMATE_READ_ONLY_TOOLS = frozenset(
    {
        ToolName.GET_PROJECT_DETAILS,
        ToolName.SEARCH_PROJECTS,
        ToolName.SUMMARIZE_ARTIFACT,
        ToolName.LIST_ROLES,
        ToolName.GET_PRICING_DEFAULTS,
        ToolName.LIST_AGREEMENTS,
        ToolName.GET_AGREEMENT,
        ToolName.VALIDATE_CONTRACT,
    }
)
CONTRACT_READ_ONLY_TOOLS = frozenset(
    {
        ToolName.LIST_AGREEMENTS,
        ToolName.GET_AGREEMENT,
        ToolName.VALIDATE_CONTRACT,
        ToolName.REVIEW_CONTRACT_DRAFT,
        ToolName.GET_PROJECT_DETAILS,
        ToolName.SEARCH_PROJECTS,
    }
)

THROTTLED_TOOLS = frozenset(
    {
        ToolName.GENERATE_BUSINESS_CASE,
        ToolName.GENERATE_REQUIREMENTS,
        ToolName.GENERATE_SOLUTION,
        ToolName.GENERATE_WBS_ITEMS,
        ToolName.UPSERT_WBS_ITEMS,
        ToolName.REMOVE_WBS_ITEMS,
        ToolName.GENERATE_QUOTE_TERMS,
        ToolName.UPDATE_PRICING_DEFAULTS,
        ToolName.CREATE_ROLE,
        ToolName.UPDATE_ROLE,
        ToolName.CREATE_AGREEMENT,
        ToolName.CREATE_AGREEMENTS_FROM_PROJECT,
        ToolName.CREATE_CONTRACT_VERSION,
        ToolName.UPDATE_CONTRACT_NOTES,
    }
)

TOOL_STAGE_REQUIREMENTS: dict[ToolName, Stage] = {
    ToolName.GENERATE_BUSINESS_CASE: Stage.BUSINESS_CASE,
    ToolName.GENERATE_REQUIREMENTS: Stage.REQUIREMENTS,
    ToolName.GENERATE_SOLUTION: Stage.SOLUTION,
    ToolName.GENERATE_WBS_ITEMS: Stage.EFFORT,
    ToolName.UPSERT_WBS_ITEMS: Stage.EFFORT,
    ToolName.REMOVE_WBS_ITEMS: Stage.EFFORT,
    ToolName.GENERATE_QUOTE_TERMS: Stage.EFFORT,
    ToolName.UPDATE_PRICING_DEFAULTS: Stage.QUOTE,
}

REFRESH_ON_SUCCESS_TOOLS: dict[ToolName, Stage] = {
    ToolName.GENERATE_WBS_ITEMS: Stage.EFFORT,
    ToolName.UPSERT_WBS_ITEMS: Stage.EFFORT,
    ToolName.REMOVE_WBS_ITEMS: Stage.EFFORT,
    ToolName.GENERATE_QUOTE_TERMS: Stage.QUOTE,
}


def can_mutate_stage(current: Stage | str | None, required: Stage) -> bool:
    """Stage gate. Unknown current stage is permissive; equality passes."""
    parsed = Stage.parse(current)
    if parsed is None:
        return True
    return parsed.index >= required.index


def has_reached_stage(current: Stage | str | None, target: Stage) -> bool:
    """Like ``can_mutate_stage`` but an unknown stage has reached nothing."""
    parsed = Stage.parse(current)
    if parsed is None:
        return False
    return parsed.index >= target.index


def get_allowed_tools(
    workflow: Workflow | str | None, read_only: bool = False
) -> frozenset[ToolName] | None:
    """Tool allowlist for a workflow; None means every registered tool."""
    if workflow == "estimates":
        return ESTIMATE_READ_ONLY_TOOLS if read_only else ESTIMATE_TOOLS
    if workflow == "contracts":
        return CONTRACT_READ_ONLY_TOOLS if read_only else CONTRACT_TOOLS
    return None


@dataclass
class ThrottleEntry:
    count: int
    window_start: float


class ThrottleStore(Protocol):
    """Storage for throttle windows. Swap for a shared counter across processes."""

    def get(self, key: str) -> ThrottleEntry | None: ...

    def set(self, key: str, entry: ThrottleEntry) -> None: ...

    def clear(self) -> None: ...


class InMemoryThrottleStore:
    """Process-local throttle storage."""

    def __init__(self) -> None:
        self._entries: dict[str, ThrottleEntry] = {}

    def get(self, key: str) -> ThrottleEntry | None:
        return self._entries.get(key)

    def set(self, key: str, entry: ThrottleEntry) -> None:
        self._entries[key] = entry

    def clear(self) -> None:
        self._entries.clear()


class MutationThrottle:
    """Fixed-ceiling window limiter keyed by ``tool:entity``.

    The window resets lazily the first time a call observes it has expired.
    Read-then-write without locking; all callers share one event loop.
    """

    def __init__(
        self,
        window_seconds: float | None = None,
        limit: int | None = None,
        store: ThrottleStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        throttled: Iterable[ToolName] = THROTTLED_TOOLS,
    ):
        cfg = get_config().guardrails
        self.window_seconds = float(cfg.throttle_window_seconds if window_seconds is None else window_seconds)
        self.limit = int(cfg.throttle_limit if limit is None else limit)
        self.store: ThrottleStore = store if store is not None else InMemoryThrottleStore()
        self.clock = clock
        self.throttled = frozenset(throttled)

    def check(self, tool_name: ToolName | str, entity_id: str | None) -> None:
        """Count one call, raising once the ceiling is already reached.

        Raises:
            MutationRateLimitError when the window already holds ``limit`` calls
        """
        name = ToolName.parse(tool_name)
        if not entity_id or name is None or name not in self.throttled:
            return

        key = f"{name.value}:{entity_id}"
        now = self.clock()
        entry = self.store.get(key)

        if entry is None or now - entry.window_start > self.window_seconds:
            self.store.set(key, ThrottleEntry(count=1, window_start=now))
            return

        if entry.count >= self.limit:
            log.warning("Mutation throttle tripped", tool=name.value, entity_id=entity_id, count=entry.count)
            raise MutationRateLimitError(name.value, entry.count, entity_id)

        self.store.set(key, ThrottleEntry(count=entry.count + 1, window_start=entry.window_start))

    def reset(self) -> None:
        self.store.clear()


@dataclass(frozen=True)
class GuardDecision:
    """Outcome of the guardrail checks for one tool call."""

    allowed: bool
    status: ToolStatus = "success"
    reason: str | None = None
    error: Exception | None = None

    @classmethod
    def allow(cls) -> "GuardDecision":
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: str) -> "GuardDecision":
        return cls(allowed=False, status="blocked", reason=reason)

    @classmethod
    def fail(cls, reason: str, error: Exception | None = None) -> "GuardDecision":
        return cls(allowed=False, status="error", reason=reason, error=error)


class GuardrailEngine:
    """Decide whether a tool call may run.

    Checks run in order: existence, workflow allowlist, stage gating, then the
    mutation throttle. Nothing here raises; every outcome is a GuardDecision.
    """

    def __init__(self, registry: ToolRegistry, throttle: MutationThrottle | None = None):
        self.registry = registry
        self.throttle = throttle or MutationThrottle()

    def allowed_tools(self, context: ExecutionContext) -> frozenset[ToolName] | None:
        return get_allowed_tools(context.workflow, context.read_only)

    def evaluate_tool_call(self, tool_name: str, context: ExecutionContext) -> GuardDecision:
        name = ToolName.parse(tool_name)
        if name is None or not self.registry.has_tool(name):
            return GuardDecision.fail(f"Tool {tool_name} is not registered.")

        allowed = self.allowed_tools(context)
        if allowed is not None and name not in allowed:
            return GuardDecision.block(f"Tool {name.value} is not available in this workflow or context.")

        required = TOOL_STAGE_REQUIREMENTS.get(name)
        if context.workflow == "estimates" and required is not None and not can_mutate_stage(context.stage, required):
            return GuardDecision.block(
                f"This project must reach the {required.label} stage before running {format_tool_label(name)}."
            )

        try:
            self.throttle.check(name, context.entity_id)
        except MutationRateLimitError as e:
            return GuardDecision.fail(e.message, error=e)

        return GuardDecision.allow()
