"""Post-success side effects for tools.

Each effect runs in isolation after its tool succeeds. A note becomes a
``[Side Effect]`` system message; an exception becomes a single
``[Side Effect Error]`` message and the remaining effects still run.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from consult_copilot.guardrails import has_reached_stage
from consult_copilot.llm.types import Message
from consult_copilot.logging import get_logger
from consult_copilot.services import (
    ContractsService,
    EstimatesService,
    ExecutionContext,
    Stage,
)
from consult_copilot.tools.names import ToolName

log = get_logger(__name__)


def _project_id(tool_input: Any, context: ExecutionContext) -> str | None:
    return getattr(tool_input, "project_id", None) or context.entity_id


class SideEffect(ABC):
    """A named follow-up action triggered by a successful tool call."""

    name: str = ""

    @abstractmethod
    async def run(self, tool_input: Any, result: Any, context: ExecutionContext) -> str | None:
        """Run the effect.

        Args:
            tool_input: Validated tool input model
            result: The handler's raw payload, or its content when raw is empty
            context: Active execution context

        Returns:
            A note for the transcript, or None when nothing user-visible happened
        """


class RecalculateQuoteTotals(SideEffect):
    name = "recalculate_quote_totals"

    def __init__(self, estimates: EstimatesService):
        self.estimates = estimates

    async def run(self, tool_input: Any, result: Any, context: ExecutionContext) -> str | None:
        project_id = _project_id(tool_input, context)
        if not project_id:
            return None

        lock = await self.estimates.get_project_lock_context(project_id)
        if not has_reached_stage(lock.stage, Stage.QUOTE):
            return None

        existing = await self.estimates.get_quote(project_id) or {}
        await self.estimates.save_quote(
            project_id,
            overheadFee=existing.get("overheadFee"),
            paymentTerms=existing.get("paymentTerms"),
            timeline=existing.get("timeline"),
            delivered=existing.get("delivered"),
        )
        return "Recalculated quote totals based on new WBS items."


class FlagStaleQuoteTerms(SideEffect):
    """Logs when WBS edits land on a project whose quote terms already exist."""

    name = "flag_stale_quote_terms"

    def __init__(self, estimates: EstimatesService):
        self.estimates = estimates

    async def run(self, tool_input: Any, result: Any, context: ExecutionContext) -> str | None:
        project_id = _project_id(tool_input, context)
        if not project_id:
            return None

        lock = await self.estimates.get_project_lock_context(project_id)
        if has_reached_stage(lock.stage, Stage.QUOTE):
            log.info("Quote terms predate WBS change", project_id=project_id)
        return None


class SaveQuoteTerms(SideEffect):
    name = "save_quote_terms"

    def __init__(self, estimates: EstimatesService):
        self.estimates = estimates

    async def run(self, tool_input: Any, result: Any, context: ExecutionContext) -> str | None:
        project_id = getattr(tool_input, "project_id", None)
        terms = result if isinstance(result, dict) else {}
        if not project_id or not terms.get("paymentTerms"):
            return None

        existing = await self.estimates.get_quote(project_id) or {}
        await self.estimates.save_quote(
            project_id,
            paymentTerms=terms["paymentTerms"],
            timeline=terms.get("timeline"),
            overheadFee=existing.get("overheadFee"),
        )
        return "Saved generated payment terms and timeline to the quote."


class MarkLinkedAgreementsStale(SideEffect):
    name = "mark_linked_agreements_stale"

    def __init__(self, contracts: ContractsService):
        self.contracts = contracts

    async def run(self, tool_input: Any, result: Any, context: ExecutionContext) -> str | None:
        project_id = _project_id(tool_input, context)
        if not project_id:
            return None

        agreements = await self.contracts.list_agreements(project_id)
        if agreements:
            return (
                f"Note: {len(agreements)} linked agreement(s) may need re-validation "
                "against the updated estimate."
            )
        return None


class PricingDefaultsNotice(SideEffect):
    name = "pricing_defaults_notice"

    async def run(self, tool_input: Any, result: Any, context: ExecutionContext) -> str | None:
        return "Updated global pricing defaults for future quotes."


class RoleRateChangeNotice(SideEffect):
    name = "role_rate_change_notice"

    async def run(self, tool_input: Any, result: Any, context: ExecutionContext) -> str | None:
        return (
            "Note: Existing quotes using this role have NOT been automatically recalculated. "
            "Please review them."
        )


class RecordValidationSnapshot(SideEffect):
    name = "record_validation_snapshot"

    async def run(self, tool_input: Any, result: Any, context: ExecutionContext) -> str | None:
        return "Validation analysis complete."


@dataclass
class SideEffectOutcome:
    messages: list[Message] = field(default_factory=list)
    notes: int = 0
    failures: int = 0

    @property
    def should_refresh(self) -> bool:
        return self.notes > 0


class SideEffectRegistry:
    """Side effects per tool, run in registration order."""

    def __init__(self) -> None:
        self._effects: dict[ToolName, list[SideEffect]] = {}

    def register(self, tool_name: ToolName, effect: SideEffect) -> None:
        self._effects.setdefault(tool_name, []).append(effect)

    def get(self, tool_name: ToolName | str) -> list[SideEffect]:
        name = ToolName.parse(tool_name)
        if name is None:
            return []
        return list(self._effects.get(name, []))

    async def run_all(
        self,
        tool_name: ToolName | str,
        tool_input: Any,
        result: Any,
        context: ExecutionContext,
    ) -> SideEffectOutcome:
        outcome = SideEffectOutcome()
        label = tool_name.value if isinstance(tool_name, ToolName) else str(tool_name)
        for effect in self.get(tool_name):
            try:
                note = await effect.run(tool_input, result, context)
            except Exception as e:
                log.error("Side effect failed", tool=label, side_effect=effect.name, error=str(e))
                outcome.failures += 1
                outcome.messages.append(
                    Message(
                        role="system",
                        content=f"[Side Effect Error] Failed to execute side effect for {label}: {e}",
                    )
                )
                continue
            if note:
                outcome.notes += 1
                outcome.messages.append(Message(role="system", content=f"[Side Effect] {note}"))
        return outcome


def build_side_effect_registry(
    estimates: EstimatesService, contracts: ContractsService
) -> SideEffectRegistry:
    """Wire the standard side effects."""
    registry = SideEffectRegistry()
    for tool in (ToolName.GENERATE_WBS_ITEMS, ToolName.UPSERT_WBS_ITEMS, ToolName.REMOVE_WBS_ITEMS):
        registry.register(tool, RecalculateQuoteTotals(estimates))
        registry.register(tool, FlagStaleQuoteTerms(estimates))
    registry.register(ToolName.GENERATE_QUOTE_TERMS, SaveQuoteTerms(estimates))
    registry.register(ToolName.GENERATE_QUOTE_TERMS, MarkLinkedAgreementsStale(contracts))
    registry.register(ToolName.UPDATE_PRICING_DEFAULTS, PricingDefaultsNotice())
    registry.register(ToolName.UPDATE_ROLE, RoleRateChangeNotice())
    registry.register(ToolName.VALIDATE_CONTRACT, RecordValidationSnapshot())
    return registry
