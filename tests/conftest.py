import asyncio
from typing import Any

import pytest

from consult_copilot.config import Config, set_config
from consult_copilot.llm.base import LLMProvider
from consult_copilot.llm.types import LLMResponse, Message, ToolCall
from consult_copilot.services import (
    AgreementLockContext,
    ContractDraftingContext,
    ProjectDraftingContext,
    ProjectLockContext,
    Stage,
)

PROJECT_ID = "cproj00000001"
AGREEMENT_ID = "cagr000000001"


class ScriptedProvider(LLMProvider):
    """Replays queued responses and records every call."""

    def __init__(self, responses: list[LLMResponse | Exception] | None = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: list[Message],
        *,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: Any = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        response_format: str = "text",
        cancel_event: asyncio.Event | None = None,
    ) -> LLMResponse:
        self.calls.append(
            {
                "messages": list(messages),
                "system_prompt": system_prompt,
                "tools": tools,
                "tool_choice": tool_choice,
                "max_tokens": max_tokens,
                "response_format": response_format,
            }
        )
        if not self.responses:
            return LLMResponse(content="")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeEstimatesService:
    def __init__(self, stage: Stage | None = Stage.EFFORT, read_only: bool = False):
        self.stage = stage
        self.read_only = read_only
        self.wbs_items: list[dict[str, Any]] = []
        self.roles: list[dict[str, Any]] = [{"id": "crole0000001", "name": "Engineer", "rate": 150}]
        self.quote: dict[str, Any] | None = None
        self.saved_quotes: list[dict[str, Any]] = []
        self.pricing = {"overheadFee": 0}
        self.solution: str | None = "Solution draft"
        self.business_case: str | None = "Business case draft"
        self.lock_error: Exception | None = None

    async def get_project_with_details(self, project_id: str) -> dict[str, Any]:
        return {"id": project_id, "name": "Portal rebuild", "stage": self.stage.value if self.stage else None}

    async def get_project_metadata(self, project_id: str) -> dict[str, Any] | None:
        return {"id": project_id, "name": "Portal rebuild", "clientName": "Acme"}

    async def search_projects(self, query: str) -> list[dict[str, Any]]:
        return [{"id": PROJECT_ID, "name": "Portal rebuild"}]

    async def get_drafting_context(self, project_id: str) -> ProjectDraftingContext:
        return ProjectDraftingContext(
            project_id=project_id,
            project_name="Portal rebuild",
            client_name="Acme",
            artifacts_digest="Kickoff notes",
            business_case=self.business_case,
            requirements="Requirements draft",
            solution=self.solution,
        )

    async def get_project_lock_context(self, project_id: str) -> ProjectLockContext:
        if self.lock_error is not None:
            raise self.lock_error
        return ProjectLockContext(project_id=project_id, stage=self.stage, read_only=self.read_only)

    async def upsert_wbs_items(self, project_id: str, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for index, item in enumerate(items):
            self.wbs_items.append({"id": item.get("id") or f"cwbs0000000{index}", **item})
        return list(self.wbs_items)

    async def remove_wbs_items(self, project_id: str, item_ids: list[str]) -> list[dict[str, Any]]:
        self.wbs_items = [item for item in self.wbs_items if item["id"] not in item_ids]
        return list(self.wbs_items)

    async def list_roles(self) -> list[dict[str, Any]]:
        return list(self.roles)

    async def create_role(self, name: str, rate: float) -> dict[str, Any]:
        role = {"id": f"crole000000{len(self.roles) + 1}", "name": name, "rate": rate}
        self.roles.append(role)
        return role

    async def update_role(self, role_id: str, name: str | None = None, rate: float | None = None) -> dict[str, Any]:
        role = {"id": role_id, "name": name or "Engineer", "rate": rate or 150}
        return role

    async def get_pricing_defaults(self) -> dict[str, Any]:
        return dict(self.pricing)

    async def update_pricing_defaults(self, overhead_fee: float) -> dict[str, Any]:
        self.pricing = {"overheadFee": overhead_fee}
        return dict(self.pricing)

    async def get_quote(self, project_id: str) -> dict[str, Any] | None:
        return self.quote

    async def save_quote(self, project_id: str, **fields: Any) -> dict[str, Any]:
        self.saved_quotes.append({"projectId": project_id, **fields})
        self.quote = {key: value for key, value in fields.items() if value is not None}
        return self.quote


class FakeContractsService:
    def __init__(self, read_only: bool = False, project_stage: Stage | None = Stage.QUOTE):
        self.read_only = read_only
        self.project_stage = project_stage
        self.agreements: dict[str, dict[str, Any]] = {
            AGREEMENT_ID: {"id": AGREEMENT_ID, "type": "MSA", "counterparty": "Acme", "projectId": PROJECT_ID}
        }
        self.versions: dict[str, list[dict[str, Any]]] = {}

    async def list_agreements(self, project_id: str) -> list[dict[str, Any]]:
        return [a for a in self.agreements.values() if a.get("projectId") == project_id]

    async def get_agreement(self, agreement_id: str) -> dict[str, Any] | None:
        return self.agreements.get(agreement_id)

    async def get_latest_version(self, agreement_id: str) -> dict[str, Any] | None:
        versions = self.versions.get(agreement_id) or []
        return versions[-1] if versions else None

    async def get_agreement_lock_context(self, agreement_id: str) -> AgreementLockContext:
        return AgreementLockContext(
            agreement_id=agreement_id,
            project_id=PROJECT_ID,
            project_stage=self.project_stage,
            read_only=self.read_only,
        )

    async def get_drafting_context(
        self,
        agreement_id: str | None,
        agreement_type: str | None = None,
        excluded_policy_ids: list[str] | None = None,
    ) -> ContractDraftingContext:
        agreement = self.agreements.get(agreement_id) if agreement_id else None
        return ContractDraftingContext(agreement=agreement, digest_text="Estimate digest", policies=[])

    async def create_agreement(self, agreement_type: str, counterparty: str, project_id: str | None = None) -> dict[str, Any]:
        agreement_id = f"cagr00000000{len(self.agreements) + 1}"
        agreement = {"id": agreement_id, "type": agreement_type, "counterparty": counterparty, "projectId": project_id}
        self.agreements[agreement_id] = agreement
        return agreement

    async def create_version(self, agreement_id: str, content: str, change_note: str | None = None) -> dict[str, Any]:
        versions = self.versions.setdefault(agreement_id, [])
        version = {"id": f"cver00000000{len(versions) + 1}", "content": content, "changeNote": change_note}
        versions.append(version)
        return version

    async def update_agreement_notes(self, agreement_id: str, notes: str) -> dict[str, Any] | None:
        agreement = self.agreements.get(agreement_id)
        if agreement is not None:
            agreement["notes"] = notes
        return agreement

    async def apply_proposals(
        self,
        agreement_id: str,
        decisions: dict[str, str] | None = None,
        change_note: str | None = None,
        mark_approved: bool | None = None,
    ) -> dict[str, Any]:
        accepted = [key for key, value in (decisions or {}).items() if value == "accepted"]
        return {
            "agreementId": agreement_id,
            "version": {"id": "cver000000009"},
            "acceptedCount": len(accepted),
            "changeNote": change_note,
        }


def tool_call_response(*calls: tuple[str, str], content: str | None = None) -> LLMResponse:
    """Response carrying tool calls given as (provider_name, arguments_json)."""
    return LLMResponse(
        content=content,
        tool_calls=[ToolCall(id=f"call_{index}", name=name, arguments=arguments) for index, (name, arguments) in enumerate(calls)],
        finish_reason="tool_calls",
    )


@pytest.fixture(autouse=True)
def default_config():
    set_config(Config())
    yield
    set_config(Config())


@pytest.fixture
def estimates_service() -> FakeEstimatesService:
    return FakeEstimatesService()


@pytest.fixture
def contracts_service() -> FakeContractsService:
    return FakeContractsService()


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def make_tool_call_response():
    return tool_call_response
