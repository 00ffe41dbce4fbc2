import pytest

from consult_copilot.exceptions import MutationRateLimitError
from consult_copilot.guardrails import (
    CONTRACT_READ_ONLY_TOOLS,
    ESTIMATE_TOOLS,
    TOOL_STAGE_REQUIREMENTS,
    GuardrailEngine,
    MutationThrottle,
    can_mutate_stage,
    get_allowed_tools,
    has_reached_stage,
)
from consult_copilot.services import STAGE_ORDER, ExecutionContext, Stage
from consult_copilot.tools import ToolName, build_tool_registry

PROJECT_ID = "cproj00000001"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def registry(estimates_service, contracts_service, scripted_provider):
    return build_tool_registry(estimates_service, contracts_service, scripted_provider())


def test_stage_labels_and_parsing():
    assert Stage.BUSINESS_CASE.label == "Business Case"
    assert Stage.parse("effort") is Stage.EFFORT
    assert Stage.parse("bogus") is None
    assert Stage.parse(None) is None


@pytest.mark.parametrize("required", sorted(set(TOOL_STAGE_REQUIREMENTS.values()), key=lambda s: s.index))
def test_stage_gate_boundary_is_inclusive(required: Stage):
    for current in STAGE_ORDER:
        assert can_mutate_stage(current, required) == (current.index >= required.index)
    assert can_mutate_stage(required, required)


def test_unknown_stage_is_permissive_for_gating_but_not_for_refresh():
    assert can_mutate_stage(None, Stage.QUOTE)
    assert not has_reached_stage(None, Stage.ARTIFACTS)


def test_allowlists_per_workflow():
    assert get_allowed_tools("estimates") == ESTIMATE_TOOLS
    assert get_allowed_tools("contracts", read_only=True) == CONTRACT_READ_ONLY_TOOLS
    assert get_allowed_tools(None) is None
    assert ToolName.CREATE_AGREEMENT not in ESTIMATE_TOOLS
    assert ToolName.GET_PROJECT_DETAILS in get_allowed_tools("contracts")


def test_throttle_allows_ceiling_then_rejects_next_call():
    clock = FakeClock()
    throttle = MutationThrottle(window_seconds=60, limit=3, clock=clock)

    for _ in range(3):
        throttle.check(ToolName.UPSERT_WBS_ITEMS, PROJECT_ID)

    with pytest.raises(MutationRateLimitError) as excinfo:
        throttle.check(ToolName.UPSERT_WBS_ITEMS, PROJECT_ID)
    assert excinfo.value.kind == "rate_limit"
    assert excinfo.value.status == 429
    assert "already ran 3 times" in excinfo.value.message


def test_throttle_window_resets_after_expiry():
    clock = FakeClock()
    throttle = MutationThrottle(window_seconds=60, limit=3, clock=clock)
    for _ in range(3):
        throttle.check(ToolName.UPSERT_WBS_ITEMS, PROJECT_ID)

    clock.now += 61
    throttle.check(ToolName.UPSERT_WBS_ITEMS, PROJECT_ID)
    throttle.check(ToolName.UPSERT_WBS_ITEMS, PROJECT_ID)
    throttle.check(ToolName.UPSERT_WBS_ITEMS, PROJECT_ID)
    with pytest.raises(MutationRateLimitError):
        throttle.check(ToolName.UPSERT_WBS_ITEMS, PROJECT_ID)


def test_throttle_keys_by_tool_and_entity_and_skips_globals():
    throttle = MutationThrottle(window_seconds=60, limit=1, clock=FakeClock())

    throttle.check(ToolName.UPSERT_WBS_ITEMS, PROJECT_ID)
    throttle.check(ToolName.REMOVE_WBS_ITEMS, PROJECT_ID)
    throttle.check(ToolName.UPSERT_WBS_ITEMS, "cproj00000002")
    for _ in range(5):
        throttle.check(ToolName.UPDATE_PRICING_DEFAULTS, None)
        throttle.check(ToolName.LIST_ROLES, PROJECT_ID)


def test_throttle_reset_clears_state():
    throttle = MutationThrottle(window_seconds=60, limit=1, clock=FakeClock())
    throttle.check(ToolName.CREATE_ROLE, PROJECT_ID)

    throttle.reset()

    throttle.check(ToolName.CREATE_ROLE, PROJECT_ID)


def test_evaluate_unknown_tool_is_error(registry):
    engine = GuardrailEngine(registry)

    decision = engine.evaluate_tool_call("estimates.nope", ExecutionContext(workflow="estimates"))

    assert not decision.allowed
    assert decision.status == "error"
    assert decision.reason == "Tool estimates.nope is not registered."


def test_evaluate_blocks_tool_outside_workflow(registry):
    engine = GuardrailEngine(registry)

    decision = engine.evaluate_tool_call(ToolName.CREATE_AGREEMENT.value, ExecutionContext(workflow="estimates"))

    assert decision.status == "blocked"


def test_evaluate_blocks_mutations_when_read_only(registry):
    engine = GuardrailEngine(registry)
    context = ExecutionContext(workflow="estimates", entity_id=PROJECT_ID, stage=Stage.QUOTE, read_only=True)

    assert engine.evaluate_tool_call(ToolName.UPSERT_WBS_ITEMS.value, context).status == "blocked"
    assert engine.evaluate_tool_call(ToolName.GET_PROJECT_DETAILS.value, context).allowed


def test_evaluate_blocks_before_required_stage(registry):
    engine = GuardrailEngine(registry)
    context = ExecutionContext(workflow="estimates", entity_id=PROJECT_ID, stage=Stage.ARTIFACTS)

    decision = engine.evaluate_tool_call(ToolName.UPSERT_WBS_ITEMS.value, context)

    assert decision.status == "blocked"
    assert decision.reason == "This project must reach the Effort stage before running estimates › upsertWbsItems."


def test_evaluate_allows_at_required_stage(registry):
    engine = GuardrailEngine(registry)
    context = ExecutionContext(workflow="estimates", entity_id=PROJECT_ID, stage=Stage.EFFORT)

    assert engine.evaluate_tool_call(ToolName.UPSERT_WBS_ITEMS.value, context).allowed


def test_evaluate_reports_rate_limit_as_error(registry):
    engine = GuardrailEngine(registry, throttle=MutationThrottle(window_seconds=60, limit=1, clock=FakeClock()))
    context = ExecutionContext(workflow="estimates", entity_id=PROJECT_ID, stage=Stage.EFFORT)

    assert engine.evaluate_tool_call(ToolName.UPSERT_WBS_ITEMS.value, context).allowed
    decision = engine.evaluate_tool_call(ToolName.UPSERT_WBS_ITEMS.value, context)

    assert decision.status == "error"
    assert isinstance(decision.error, MutationRateLimitError)
