import json

import pytest
from structlog.testing import capture_logs

from consult_copilot.config import Config
from consult_copilot.exceptions import CopilotLLMError
from consult_copilot.llm.types import LLMResponse
from consult_copilot.orchestrator import (
    COMPLETION_NOTICE,
    CopilotOrchestrator,
    CopilotRequest,
)
from consult_copilot.services import Stage

PROJECT_ID = "cproj00000001"
AGREEMENT_ID = "cagr000000001"


def _request(text: str = "Add a design task", **overrides) -> CopilotRequest:
    payload = {
        "messages": [{"role": "user", "content": text}],
        "workflow": "estimates",
        "entityId": PROJECT_ID,
        "entityType": "project",
    }
    payload.update(overrides)
    return CopilotRequest.model_validate(payload)


def _upsert_args() -> str:
    return json.dumps({"items": [{"task": "Design", "roleName": "Engineer", "hours": 8}]})


@pytest.fixture
def build(estimates_service, contracts_service):
    def _build(provider, config: Config | None = None) -> CopilotOrchestrator:
        return CopilotOrchestrator.build(provider, estimates_service, contracts_service, config=config)

    return _build


@pytest.mark.asyncio
async def test_plain_reply_ends_loop_after_one_call(build, scripted_provider):
    provider = scripted_provider([LLMResponse(content="Hello there.", finish_reason="stop")])
    orchestrator = build(provider)

    response = await orchestrator.run(_request("hi"))

    assert len(provider.calls) == 1
    assert provider.calls[0]["tool_choice"] == "auto"
    assert provider.calls[0]["tools"]
    assert [m.role for m in response.messages] == ["user", "assistant"]
    assert response.messages[-1].content == "Hello there."
    assert response.to_dict()["shouldRefresh"] is False


@pytest.mark.asyncio
async def test_blocked_turn_ends_with_block_summary(build, scripted_provider, estimates_service, make_tool_call_response):
    estimates_service.stage = Stage.ARTIFACTS
    provider = scripted_provider([make_tool_call_response(("estimates_upsertWbsItems", _upsert_args()))])
    orchestrator = build(provider)

    response = await orchestrator.run(_request())

    assert len(provider.calls) == 1
    tool_message = response.messages[2]
    assert tool_message.role == "tool"
    assert tool_message.meta.status == "blocked"
    assert response.messages[-1].role == "assistant"
    assert response.messages[-1].content == (
        "This project must reach the Effort stage before running estimates › upsertWbsItems."
    )
    assert estimates_service.wbs_items == []


@pytest.mark.asyncio
async def test_turn_cap_then_one_tool_free_call(build, scripted_provider, make_tool_call_response):
    responses = [make_tool_call_response(("roles_list", "{}")) for _ in range(5)]
    responses.append(LLMResponse(content="Listed the roles.", finish_reason="stop"))
    provider = scripted_provider(responses)
    orchestrator = build(provider)

    response = await orchestrator.run(_request("list roles"))

    assert [call["tool_choice"] for call in provider.calls] == ["auto"] * 5 + ["none"]
    assert response.messages[-1].content == "Listed the roles."
    assert sum(1 for m in response.messages if m.role == "tool") == 5


@pytest.mark.asyncio
async def test_turn_cap_follows_config(build, scripted_provider, make_tool_call_response):
    config = Config()
    config.agent.max_turns = 2
    provider = scripted_provider([make_tool_call_response(("roles_list", "{}")) for _ in range(4)])
    orchestrator = build(provider, config=config)

    await orchestrator.run(_request("list roles"))

    assert [call["tool_choice"] for call in provider.calls] == ["auto", "auto", "none"]


@pytest.mark.asyncio
async def test_empty_closing_reply_falls_back_to_tool_summary(build, scripted_provider, make_tool_call_response):
    provider = scripted_provider([make_tool_call_response(("roles_list", "{}"))])
    orchestrator = build(provider)

    response = await orchestrator.run(_request("list roles"))

    # Tool turn, empty reply, then the closing tool-free call also comes back empty.
    assert [call["tool_choice"] for call in provider.calls] == ["auto", "auto", "none"]
    assert response.messages[-1].content == "roles › list — responded with roles."


@pytest.mark.asyncio
async def test_empty_reply_without_tools_gets_completion_notice(build, scripted_provider):
    provider = scripted_provider([LLMResponse(content="   ", finish_reason="stop")])
    orchestrator = build(provider)

    response = await orchestrator.run(_request("hi"))

    assert len(provider.calls) == 1
    assert response.messages[-1].content == COMPLETION_NOTICE


@pytest.mark.asyncio
async def test_provider_error_becomes_final_message(build, scripted_provider):
    provider = scripted_provider([CopilotLLMError("Invalid API key", kind="auth", status=401)])
    orchestrator = build(provider)

    response = await orchestrator.run(_request("hi"))

    assert response.messages[-1].role == "assistant"
    assert response.messages[-1].content == "I couldn't complete that request (auth error): Invalid API key"


@pytest.mark.asyncio
async def test_mixed_turn_keeps_looping_and_refreshes(build, scripted_provider, make_tool_call_response):
    provider = scripted_provider(
        [
            make_tool_call_response(
                ("estimates_upsertWbsItems", _upsert_args()),
                ("estimates_nope", "{}"),
            ),
            LLMResponse(content="Added the design task.", finish_reason="stop"),
        ]
    )
    orchestrator = build(provider)

    response = await orchestrator.run(_request())

    assert len(provider.calls) == 2
    statuses = [m.meta.status for m in response.messages if m.role == "tool"]
    assert statuses == ["success", "error"]
    assert response.should_refresh is True
    assert response.messages[-1].content == "Added the design task."


@pytest.mark.asyncio
async def test_tool_messages_follow_their_assistant_call(build, scripted_provider, estimates_service, make_tool_call_response):
    estimates_service.stage = Stage.QUOTE
    provider = scripted_provider(
        [
            make_tool_call_response(("estimates_upsertWbsItems", _upsert_args())),
            LLMResponse(content="Done.", finish_reason="stop"),
        ]
    )
    orchestrator = build(provider)

    response = await orchestrator.run(_request())

    roles = [m.role for m in response.messages]
    assert roles[:3] == ["user", "assistant", "tool"]
    # Side effect notes come after the tool replies of the same turn.
    assert roles[3] == "system"
    assert response.messages[3].content.startswith("[Side Effect] ")
    second_call_history = provider.calls[1]["messages"]
    assert second_call_history[2].tool_call_id == "call_0"


@pytest.mark.asyncio
async def test_context_resolution_failure_is_logged_not_raised(build, scripted_provider, estimates_service):
    estimates_service.lock_error = RuntimeError("database unavailable")
    provider = scripted_provider([LLMResponse(content="Hi.", finish_reason="stop")])
    orchestrator = build(provider)

    with capture_logs() as logs:
        response = await orchestrator.run(_request("hi"))

    assert response.messages[-1].content == "Hi."
    assert any(entry["event"] == "Failed to resolve entity context" for entry in logs)
    assert "Current stage" not in provider.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_agreement_context_uses_linked_project_stage(build, scripted_provider, contracts_service):
    contracts_service.read_only = True
    provider = scripted_provider([LLMResponse(content="Read only.", finish_reason="stop")])
    orchestrator = build(provider)
    request = _request("hi", workflow="contracts", entityId=AGREEMENT_ID, entityType="agreement")

    context = await orchestrator.resolve_context(request)
    await orchestrator.run(request)

    assert context.stage is Stage.QUOTE
    assert context.read_only is True
    tool_names = {tool["function"]["name"] for tool in provider.calls[0]["tools"]}
    assert "contracts_getAgreement" in tool_names
    assert "contracts_createVersion" not in tool_names


@pytest.mark.asyncio
async def test_history_sent_to_provider_is_windowed(build, scripted_provider):
    config = Config()
    config.agent.history_limit = 3
    provider = scripted_provider([LLMResponse(content="ok", finish_reason="stop")])
    orchestrator = build(provider, config=config)
    messages = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"} for i in range(9)]

    response = await orchestrator.run(_request(messages=messages))

    assert [m.content for m in provider.calls[0]["messages"]] == ["m6", "m7", "m8"]
    assert len(response.messages) == 10


@pytest.mark.asyncio
async def test_provider_error_after_tool_turn_keeps_tool_outcomes(build, scripted_provider, make_tool_call_response):
    provider = scripted_provider(
        [
            make_tool_call_response(("roles_list", "{}")),
            CopilotLLMError("Upstream unavailable", kind="server", status=503),
        ]
    )
    orchestrator = build(provider)

    response = await orchestrator.run(_request("list roles"))

    assert response.messages[-1].content == (
        "roles › list — responded with roles.\n\n"
        "I couldn't complete that request (server error): Upstream unavailable"
    )


@pytest.mark.asyncio
async def test_loop_log_reports_turns_actually_run(build, scripted_provider, make_tool_call_response):
    provider = scripted_provider([make_tool_call_response(("roles_list", "{}"))])
    orchestrator = build(provider)

    with capture_logs() as logs:
        await orchestrator.run(_request("list roles"))

    [finished] = [entry for entry in logs if entry["event"] == "Copilot loop finished"]
    assert finished["reason"] == "empty_reply"
    assert finished["turns"] == 2
