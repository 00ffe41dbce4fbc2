"""Agent loop: drives provider turns and tool execution for one request."""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from consult_copilot.config import Config, get_config
from consult_copilot.exceptions import normalize_copilot_error
from consult_copilot.executor import ToolExecutionRecord, ToolExecutor, summarize_tool_executions
from consult_copilot.guardrails import GuardrailEngine, MutationThrottle
from consult_copilot.history import build_history_window
from consult_copilot.llm.base import LLMProvider
from consult_copilot.llm.types import LLMResponse, Message, ToolChoice
from consult_copilot.logging import get_logger
from consult_copilot.prompts import build_chat_system_prompt
from consult_copilot.services import (
    ContractsService,
    EntityType,
    EstimatesService,
    ExecutionContext,
    Workflow,
)
from consult_copilot.side_effects import SideEffectRegistry, build_side_effect_registry
from consult_copilot.tools import build_tool_registry
from consult_copilot.tools.registry import ToolRegistry

log = get_logger(__name__)

COMPLETION_NOTICE = "Completed the requested actions."


class CopilotRequest(BaseModel):
    """Inbound chat request. History is supplied by the caller every time."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: list[dict[str, Any]] = Field(default_factory=list)
    workflow: Workflow | None = None
    entity_id: str | None = Field(default=None, alias="entityId")
    entity_type: EntityType | None = Field(default=None, alias="entityType")
    view: str | None = None

    def history(self) -> list[Message]:
        return [Message.from_payload(item) for item in self.messages]


@dataclass
class CopilotResponse:
    """Full transcript plus the refresh hint for the caller's UI."""

    messages: list[Message] = field(default_factory=list)
    should_refresh: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [message.to_dict() for message in self.messages],
            "shouldRefresh": self.should_refresh,
        }


class CopilotOrchestrator:
    """Bounded tool-calling loop over an OpenAI-compatible provider.

    Each turn windows the history, asks the model for a reply with the
    workflow's tools, and runs any requested tool calls in order. A turn in
    which every call was blocked or failed ends the loop with that failure's
    summary. Otherwise the loop runs until the model answers in plain text or
    the turn cap is hit, followed by one tool-free call to summarize.
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        executor: ToolExecutor,
        estimates: EstimatesService | None = None,
        contracts: ContractsService | None = None,
        config: Config | None = None,
    ):
        self.provider = provider
        self.registry = registry
        self.executor = executor
        self.estimates = estimates
        self.contracts = contracts
        cfg = config or get_config()
        self.max_turns = max(1, int(cfg.agent.max_turns))
        self.history_limit = max(1, int(cfg.agent.history_limit))
        self.max_output_tokens = int(cfg.llm.max_output_tokens)

    @classmethod
    def build(
        cls,
        provider: LLMProvider,
        estimates: EstimatesService,
        contracts: ContractsService,
        throttle: MutationThrottle | None = None,
        side_effects: SideEffectRegistry | None = None,
        config: Config | None = None,
    ) -> "CopilotOrchestrator":
        """Wire registry, guardrails, side effects and executor against the services."""
        cfg = config or get_config()
        registry = build_tool_registry(estimates, contracts, provider)
        guardrails = GuardrailEngine(registry, throttle=throttle)
        executor = ToolExecutor(
            registry,
            guardrails,
            side_effects or build_side_effect_registry(estimates, contracts),
            tool_timeout_seconds=cfg.tools.timeout_seconds,
        )
        return cls(provider, registry, executor, estimates, contracts, config=cfg)

    @property
    def guardrails(self) -> GuardrailEngine:
        return self.executor.guardrails

    async def resolve_context(self, request: CopilotRequest) -> ExecutionContext:
        """Build the execution context, looking up stage and lock state when possible."""
        context = ExecutionContext(
            workflow=request.workflow,
            entity_id=request.entity_id,
            entity_type=request.entity_type,
        )
        if not request.entity_id:
            return context

        try:
            if context.is_project and self.estimates is not None:
                lock = await self.estimates.get_project_lock_context(request.entity_id)
                return ExecutionContext(
                    workflow=context.workflow,
                    entity_id=context.entity_id,
                    entity_type=context.entity_type,
                    stage=lock.stage,
                    read_only=lock.read_only,
                )
            if context.is_agreement and self.contracts is not None:
                lock = await self.contracts.get_agreement_lock_context(request.entity_id)
                return ExecutionContext(
                    workflow=context.workflow,
                    entity_id=context.entity_id,
                    entity_type=context.entity_type,
                    stage=lock.project_stage,
                    read_only=lock.read_only,
                )
        except Exception as e:
            log.warning(
                "Failed to resolve entity context",
                workflow=request.workflow,
                entity_id=request.entity_id,
                error=str(e),
            )
        return context

    async def _complete(
        self,
        history: list[Message],
        system_prompt: str,
        tools: list[dict[str, Any]] | None,
        tool_choice: ToolChoice,
        cancel_event: asyncio.Event | None,
    ) -> LLMResponse:
        return await self.provider.complete(
            build_history_window(history, self.history_limit),
            system_prompt=system_prompt,
            tools=tools or None,
            tool_choice=tool_choice if tools else None,
            max_tokens=self.max_output_tokens,
            cancel_event=cancel_event,
        )

    @staticmethod
    def _provider_failure_message(error: BaseException) -> str:
        normalized = normalize_copilot_error(error)
        return f"I couldn't complete that request ({normalized.kind} error): {normalized.message}"

    async def run(
        self,
        request: CopilotRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> CopilotResponse:
        """Run the loop for one request. Never raises for provider or tool failures."""
        context = await self.resolve_context(request)
        system_prompt = build_chat_system_prompt(
            context.workflow,
            entity_id=context.entity_id,
            entity_type=context.entity_type,
            stage=context.stage,
            view=request.view,
            read_only=context.read_only,
        )
        tools = self.registry.list_for_provider(self.guardrails.allowed_tools(context))

        history = request.history()
        records: list[ToolExecutionRecord] = []
        should_refresh = False
        ran_tools = False
        reason = "turn_limit"

        turns_run = 0
        for turn in range(1, self.max_turns + 1):
            turns_run = turn
            try:
                response = await self._complete(history, system_prompt, tools, "auto", cancel_event)
            except Exception as e:
                log.error("Provider call failed", turn=turn, error=str(e))
                failure = self._provider_failure_message(e)
                if records:
                    failure = f"{summarize_tool_executions(records)}\n\n{failure}"
                history.append(Message(role="assistant", content=failure))
                return CopilotResponse(messages=history, should_refresh=should_refresh)

            text = (response.content or "").strip()
            if not response.tool_calls:
                if text:
                    history.append(Message(role="assistant", content=text))
                    log.info("Copilot loop finished", reason="final_reply", turns=turn)
                    return CopilotResponse(messages=history, should_refresh=should_refresh)
                reason = "empty_reply"
                break

            history.append(
                Message(role="assistant", content=response.content or None, tool_calls=response.tool_calls)
            )
            batch = await self.executor.execute_tool_calls(response.tool_calls, context, abort_event=cancel_event)
            history.extend(batch.tool_messages)
            history.extend(batch.side_effect_messages)
            records.extend(batch.records)
            ran_tools = True
            if batch.should_refresh:
                should_refresh = True

            if batch.all_failed:
                summary = batch.first_failure_summary() or summarize_tool_executions(batch.records)
                history.append(Message(role="assistant", content=summary or COMPLETION_NOTICE))
                log.info("Copilot loop finished", reason="all_tools_failed", turns=turn)
                return CopilotResponse(messages=history, should_refresh=should_refresh)

        log.info("Copilot loop finished", reason=reason, turns=turns_run, ran_tools=ran_tools)
        final_text = ""
        if ran_tools:
            try:
                response = await self._complete(history, system_prompt, tools, "none", cancel_event)
                final_text = (response.content or "").strip()
            except Exception as e:
                log.warning("Closing summary call failed", error=str(e))

        if not final_text:
            final_text = summarize_tool_executions(records) or COMPLETION_NOTICE
        history.append(Message(role="assistant", content=final_text))
        return CopilotResponse(messages=history, should_refresh=should_refresh)
