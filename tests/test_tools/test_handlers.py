import json

import pytest
from pydantic import ValidationError

from consult_copilot.exceptions import CopilotLLMError
from consult_copilot.llm.types import LLMResponse, ToolCall
from consult_copilot.tools import schemas
from consult_copilot.tools.contracts import EMPTY_VERSION_HINT, ContractsTools
from consult_copilot.tools.estimates import WBS_FUNCTION_NAME, EstimatesTools

PROJECT_ID = "cproj00000001"
AGREEMENT_ID = "cagr000000001"


def test_wbs_item_requires_role_reference():
    with pytest.raises(ValidationError, match="roleId or roleName"):
        schemas.WbsItemInput.model_validate({"task": "Build API", "hours": 8})

    item = schemas.WbsItemInput.model_validate({"task": " Build API ", "roleName": "Engineer", "hours": 8})
    assert item.task == "Build API"


def test_project_id_must_look_like_record_id():
    with pytest.raises(ValidationError):
        schemas.GetProjectDetailsInput.model_validate({"projectId": "not-an-id"})
    assert schemas.GetProjectDetailsInput.model_validate({"projectId": PROJECT_ID}).project_id == PROJECT_ID


def test_contract_inputs_reject_unknown_keys():
    with pytest.raises(ValidationError):
        schemas.CreateContractVersionInput.model_validate(
            {"agreementId": AGREEMENT_ID, "content": "Text", "surprise": True}
        )
    # Lenient inputs drop unknown keys instead.
    assert schemas.SearchProjectsInput.model_validate({"query": "portal", "extra": 1}).query == "portal"


@pytest.mark.asyncio
async def test_upsert_wbs_items_returns_items_payload(estimates_service, scripted_provider):
    tools = EstimatesTools(estimates_service, scripted_provider())
    tool_input = schemas.UpsertWbsItemsInput.model_validate(
        {"projectId": PROJECT_ID, "items": [{"task": "Design", "roleName": "Engineer", "hours": 12}]}
    )

    result = await tools.upsert_wbs_items(tool_input)

    payload = json.loads(result.content)
    assert payload["items"][0]["task"] == "Design"
    assert payload["items"][0]["roleName"] == "Engineer"
    assert result.raw == estimates_service.wbs_items


@pytest.mark.asyncio
async def test_generate_requirements_needs_business_case(estimates_service, scripted_provider):
    estimates_service.business_case = "  "
    provider = scripted_provider()
    tools = EstimatesTools(estimates_service, provider)

    with pytest.raises(CopilotLLMError, match="without a Business Case draft"):
        await tools.generate_requirements(schemas.GenerateRequirementsInput(projectId=PROJECT_ID))
    assert provider.calls == []


@pytest.mark.asyncio
async def test_generate_requirements_escalates_budget_on_truncation(estimates_service, scripted_provider):
    provider = scripted_provider(
        [
            LLMResponse(content="", finish_reason="length"),
            LLMResponse(content="## Requirements", finish_reason="stop"),
        ]
    )
    tools = EstimatesTools(estimates_service, provider)

    result = await tools.generate_requirements(schemas.GenerateRequirementsInput(projectId=PROJECT_ID))

    assert result.content == "## Requirements"
    assert [call["max_tokens"] for call in provider.calls] == [1800, 2700]


@pytest.mark.asyncio
async def test_generate_wbs_items_reads_forced_function_call(estimates_service, scripted_provider):
    items = [{"task": f"Task {i}", "roleId": "crole0000001", "hours": 8} for i in range(5)]
    provider = scripted_provider(
        [
            LLMResponse(
                tool_calls=[ToolCall(id="call_1", name=WBS_FUNCTION_NAME, arguments=json.dumps({"items": items}))],
                finish_reason="tool_calls",
            )
        ]
    )
    tools = EstimatesTools(estimates_service, provider)

    result = await tools.generate_wbs_items(schemas.GenerateWbsItemsInput(projectId=PROJECT_ID))

    assert len(json.loads(result.content)["items"]) == 5
    assert provider.calls[0]["tool_choice"] == {"type": "function", "function": {"name": WBS_FUNCTION_NAME}}


@pytest.mark.asyncio
async def test_generate_wbs_items_requires_solution(estimates_service, scripted_provider):
    estimates_service.solution = None
    tools = EstimatesTools(estimates_service, scripted_provider())

    with pytest.raises(CopilotLLMError, match="without a Solution draft"):
        await tools.generate_wbs_items(schemas.GenerateWbsItemsInput(projectId=PROJECT_ID))


@pytest.mark.asyncio
async def test_generate_quote_terms_returns_parsed_terms(estimates_service, scripted_provider):
    terms = {"paymentTerms": "Net 30", "timeline": "6 weeks"}
    provider = scripted_provider([LLMResponse(content=json.dumps(terms), finish_reason="stop")])
    tools = EstimatesTools(estimates_service, provider)
    tool_input = schemas.GenerateQuoteTermsInput(
        projectId=PROJECT_ID, subtotal=1000, overheadFee=100, total=1100, wbsSummary="Design 10h"
    )

    result = await tools.generate_quote_terms(tool_input)

    assert result.raw == terms
    assert provider.calls[0]["response_format"] == "json_object"


@pytest.mark.asyncio
async def test_generate_quote_terms_rejects_malformed_json(estimates_service, scripted_provider):
    provider = scripted_provider([LLMResponse(content='{"paymentTerms": 5}', finish_reason="stop")])
    tools = EstimatesTools(estimates_service, provider)
    tool_input = schemas.GenerateQuoteTermsInput(
        projectId=PROJECT_ID, subtotal=1000, overheadFee=100, total=1100, wbsSummary="Design 10h"
    )

    with pytest.raises(CopilotLLMError, match="invalid quote terms JSON"):
        await tools.generate_quote_terms(tool_input)


@pytest.mark.asyncio
async def test_get_agreement_hints_when_latest_version_empty(estimates_service, contracts_service, scripted_provider):
    contracts_service.versions[AGREEMENT_ID] = [{"id": "cver000000001", "content": ""}]
    tools = ContractsTools(contracts_service, estimates_service, scripted_provider())

    result = await tools.get_agreement(schemas.GetAgreementInput(agreementId=AGREEMENT_ID))

    assert result.raw["_hint"] == EMPTY_VERSION_HINT
    assert result.raw["latestVersion"]["id"] == "cver000000001"


@pytest.mark.asyncio
async def test_get_agreement_not_found(estimates_service, contracts_service, scripted_provider):
    tools = ContractsTools(contracts_service, estimates_service, scripted_provider())

    with pytest.raises(CopilotLLMError, match="Agreement not found"):
        await tools.get_agreement(schemas.GetAgreementInput(agreementId="cmissing00001"))


@pytest.mark.asyncio
async def test_create_agreements_from_project_drafts_and_reviews_sow(
    estimates_service, contracts_service, scripted_provider
):
    provider = scripted_provider(
        [
            LLMResponse(content="MSA text", finish_reason="stop"),
            LLMResponse(content="SOW text", finish_reason="stop"),
            LLMResponse(content='{"proposals": []}', finish_reason="stop"),
        ]
    )
    tools = ContractsTools(contracts_service, estimates_service, provider)
    tool_input = schemas.CreateAgreementsFromProjectInput.model_validate(
        {"projectId": PROJECT_ID, "agreementTypes": ["MSA", "SOW"]}
    )

    result = await tools.create_agreements_from_project(tool_input)

    created = json.loads(result.content)["agreements"]
    assert [entry["type"] for entry in created] == ["MSA", "SOW"]
    assert "reviewed" not in created[0]
    assert created[1]["reviewed"] is True
    sow_versions = contracts_service.versions[created[1]["agreementId"]]
    assert sow_versions[0]["changeNote"] == "Initial AI draft"
    assert contracts_service.agreements[created[0]["agreementId"]]["counterparty"] == "Acme"


@pytest.mark.asyncio
async def test_create_agreements_from_project_records_draft_errors(
    estimates_service, contracts_service, scripted_provider
):
    provider = scripted_provider([LLMResponse(content="", finish_reason="stop")])
    tools = ContractsTools(contracts_service, estimates_service, provider)
    tool_input = schemas.CreateAgreementsFromProjectInput.model_validate(
        {"projectId": PROJECT_ID, "agreementTypes": ["MSA"]}
    )

    result = await tools.create_agreements_from_project(tool_input)

    created = json.loads(result.content)["agreements"]
    assert created[0]["error"] == "Copilot did not return any agreement content."


@pytest.mark.asyncio
async def test_validate_analysis_requires_content(estimates_service, contracts_service, scripted_provider):
    tools = ContractsTools(contracts_service, estimates_service, scripted_provider())

    with pytest.raises(CopilotLLMError, match="no content to validate"):
        await tools.validate_analysis(schemas.ValidateContractInput(agreementId=AGREEMENT_ID))


@pytest.mark.asyncio
async def test_apply_proposals_summarizes_result(estimates_service, contracts_service, scripted_provider):
    tools = ContractsTools(contracts_service, estimates_service, scripted_provider())
    tool_input = schemas.ApplyContractProposalsInput.model_validate(
        {"agreementId": AGREEMENT_ID, "decisions": {"p1": "accepted", "p2": "rejected"}, "changeNote": "Applied"}
    )

    result = await tools.apply_proposals(tool_input)

    assert json.loads(result.content) == {
        "agreementId": AGREEMENT_ID,
        "versionId": "cver000000009",
        "acceptedCount": 1,
        "changeNote": "Applied",
    }
