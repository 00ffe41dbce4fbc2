"""Estimates, roles and quote tool handlers."""

import json
import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from consult_copilot.exceptions import CopilotLLMError
from consult_copilot.llm.base import LLMProvider
from consult_copilot.llm.retry import call_with_content_retry, truncate_for_prompt
from consult_copilot.llm.types import LLMResponse
from consult_copilot.logging import get_logger
from consult_copilot.prompts import (
    PROMPT_SUMMARY_INSTRUCTIONS,
    STORAGE_SUMMARY_INSTRUCTIONS,
    build_artifact_summary_prompt,
    build_business_case_prompt,
    build_quote_terms_prompt,
    build_requirements_prompt,
    build_solution_prompt,
    build_wbs_prompt,
)
from consult_copilot.services import EstimatesService
from consult_copilot.tools import schemas
from consult_copilot.tools.names import ToolName
from consult_copilot.tools.registry import ToolDefinition, ToolResult

log = get_logger(__name__)

BUSINESS_CASE_COMPLETION_TOKENS = 1200
REQUIREMENTS_COMPLETION_TOKENS = 1800
REQUIREMENTS_BUSINESS_CASE_MAX_CHARS = 6000
SOLUTION_COMPLETION_TOKENS = 4000
SOLUTION_SOURCE_MAX_CHARS = 6000
WBS_COMPLETION_TOKENS = 1800
WBS_MAX_ITEMS = 18
QUOTE_TERMS_COMPLETION_TOKENS = 2400
STORAGE_SUMMARY_MAX_TOKENS = 500
PROMPT_SUMMARY_MAX_TOKENS = 450

WBS_FUNCTION_NAME = "generate_wbs_items"


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class GeneratedWbsItem(BaseModel):
    task: str = Field(min_length=1, max_length=240)
    role_id: str | None = Field(default=None, alias="roleId")
    role_name: str | None = Field(default=None, alias="roleName", max_length=120)
    hours: float = Field(gt=0, le=2000)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _require_role(self) -> "GeneratedWbsItem":
        if not (self.role_id or self.role_name):
            raise ValueError("Each WBS item must reference a roleId or roleName.")
        return self


class GeneratedWbsPayload(BaseModel):
    items: list[GeneratedWbsItem] = Field(min_length=3, max_length=WBS_MAX_ITEMS)


def _wbs_function_tool() -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": WBS_FUNCTION_NAME,
            "description": (
                "Return a list of 5-18 WBS items with task, role, and hours derived from the provided context."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "items": {
                        "type": "array",
                        "minItems": 5,
                        "maxItems": WBS_MAX_ITEMS,
                        "items": {
                            "type": "object",
                            "required": ["task", "roleId", "hours"],
                            "properties": {
                                "task": {"type": "string"},
                                "roleId": {"type": "string"},
                                "roleName": {"type": "string"},
                                "hours": {"type": "number", "minimum": 4, "maximum": 200},
                            },
                        },
                    }
                },
                "required": ["items"],
            },
        },
    }


def parse_wbs_tool_payload(response: LLMResponse) -> Any:
    """Pull the structured WBS payload out of a forced function call or the text body."""
    for call in response.tool_calls:
        if call.name == WBS_FUNCTION_NAME and call.arguments:
            try:
                return json.loads(call.arguments)
            except json.JSONDecodeError:
                log.warning("Failed to parse WBS tool arguments", arguments=call.arguments[:200])
    if response.content:
        try:
            return json.loads(response.content)
        except json.JSONDecodeError:
            log.warning("Failed to parse WBS JSON content")
    raise CopilotLLMError("Copilot did not return structured WBS items.", kind="server")


class EstimatesTools:
    """Handlers for ``estimates.*``, ``roles.*`` and ``quote.*`` tools."""

    def __init__(self, service: EstimatesService, provider: LLMProvider):
        self.service = service
        self.provider = provider

    # --- Read tools ---

    async def get_project_details(self, tool_input: schemas.GetProjectDetailsInput) -> ToolResult:
        project = await self.service.get_project_with_details(tool_input.project_id)
        return ToolResult(content=_dumps(project), raw=project)

    async def search_projects(self, tool_input: schemas.SearchProjectsInput) -> ToolResult:
        projects = await self.service.search_projects(tool_input.query)
        return ToolResult(content=_dumps({"projects": projects}), raw=projects)

    # --- WBS edits ---

    async def upsert_wbs_items(self, tool_input: schemas.UpsertWbsItemsInput) -> ToolResult:
        items = [item.model_dump(by_alias=True, exclude_none=True) for item in tool_input.items]
        updated = await self.service.upsert_wbs_items(tool_input.project_id, items)
        return ToolResult(content=_dumps({"items": updated}), raw=updated)

    async def remove_wbs_items(self, tool_input: schemas.RemoveWbsItemsInput) -> ToolResult:
        updated = await self.service.remove_wbs_items(tool_input.project_id, list(tool_input.item_ids))
        return ToolResult(content=_dumps({"items": updated}), raw=updated)

    # --- Drafting ---

    async def generate_business_case(self, tool_input: schemas.GenerateBusinessCaseInput) -> ToolResult:
        context = await self.service.get_drafting_context(tool_input.project_id)
        prompt = build_business_case_prompt(context, tool_input.instructions)
        response = await self.provider.complete(
            prompt.messages,
            system_prompt=prompt.system_prompt,
            max_tokens=BUSINESS_CASE_COMPLETION_TOKENS,
            temperature=0.3,
        )
        return ToolResult(
            content=(response.content or "").strip(),
            finish_reason=response.finish_reason,
            raw=response.raw_response,
        )

    async def generate_requirements(self, tool_input: schemas.GenerateRequirementsInput) -> ToolResult:
        context = await self.service.get_drafting_context(tool_input.project_id)
        business_case = (context.business_case or "").strip()
        if not business_case:
            raise CopilotLLMError(
                "Cannot generate requirements without a Business Case draft.", kind="bad_request"
            )

        prompt = build_requirements_prompt(
            context,
            truncate_for_prompt(business_case, REQUIREMENTS_BUSINESS_CASE_MAX_CHARS, "Business Case"),
            tool_input.instructions,
        )

        async def call(max_tokens: int) -> LLMResponse:
            return await self.provider.complete(
                prompt.messages,
                system_prompt=prompt.system_prompt,
                max_tokens=max_tokens,
                temperature=0.2,
            )

        outcome = await call_with_content_retry(
            "requirements",
            REQUIREMENTS_COMPLETION_TOKENS,
            call,
            max_tokens=max(REQUIREMENTS_COMPLETION_TOKENS * 2, 4000),
        )
        if not outcome.content:
            raise CopilotLLMError("Copilot did not return any requirements content.", kind="server")

        log.info(
            "Requirements draft generated",
            project_id=tool_input.project_id,
            finish_reason=outcome.result.finish_reason if outcome.result else None,
        )
        return ToolResult(
            content=outcome.content,
            finish_reason=outcome.result.finish_reason if outcome.result else None,
            raw=outcome.result.raw_response if outcome.result else None,
        )

    async def generate_solution(self, tool_input: schemas.GenerateSolutionInput) -> ToolResult:
        context = await self.service.get_drafting_context(tool_input.project_id)
        business_case = (context.business_case or "").strip()
        requirements = (context.requirements or "").strip()
        if not business_case:
            raise CopilotLLMError(
                "Cannot generate Solution Architecture without a Business Case draft.",
                kind="bad_request",
            )
        if not requirements:
            raise CopilotLLMError(
                "Cannot generate Solution Architecture without a Requirements draft.",
                kind="bad_request",
            )

        prompt = build_solution_prompt(
            context,
            truncate_for_prompt(business_case, SOLUTION_SOURCE_MAX_CHARS, "Business Case for solution prompt"),
            truncate_for_prompt(requirements, SOLUTION_SOURCE_MAX_CHARS, "Requirements for solution prompt"),
            tool_input.instructions,
        )

        async def call(max_tokens: int) -> LLMResponse:
            return await self.provider.complete(
                prompt.messages,
                system_prompt=prompt.system_prompt,
                max_tokens=max_tokens,
                temperature=0.25,
            )

        outcome = await call_with_content_retry(
            "solution",
            SOLUTION_COMPLETION_TOKENS,
            call,
            max_tokens=max(SOLUTION_COMPLETION_TOKENS * 2, 6000),
        )
        if not outcome.content:
            raise CopilotLLMError(
                "Copilot did not return any solution architecture content.", kind="server"
            )
        return ToolResult(
            content=outcome.content,
            finish_reason=outcome.result.finish_reason if outcome.result else None,
            raw=outcome.result.raw_response if outcome.result else None,
        )

    async def generate_wbs_items(self, tool_input: schemas.GenerateWbsItemsInput) -> ToolResult:
        context = await self.service.get_drafting_context(tool_input.project_id)
        solution = (context.solution or "").strip()
        if not solution:
            raise CopilotLLMError("Cannot generate WBS items without a Solution draft.", kind="bad_request")

        roles = await self.service.list_roles()
        if not roles:
            raise CopilotLLMError(
                "No delivery roles are configured. Ask Copilot to add staffing roles before generating a WBS.",
                kind="server",
            )
        role_catalog = [{"id": r.get("id"), "name": r.get("name"), "rate": r.get("rate")} for r in roles]
        prompt = build_wbs_prompt(context, solution, role_catalog, tool_input.instructions)

        ceiling = max(WBS_COMPLETION_TOKENS * 2, 3600)
        tokens = WBS_COMPLETION_TOKENS
        response: LLMResponse | None = None
        payload: Any = None
        for attempt in range(3):
            response = await self.provider.complete(
                prompt.messages,
                system_prompt=prompt.system_prompt,
                tools=[_wbs_function_tool()],
                tool_choice={"type": "function", "function": {"name": WBS_FUNCTION_NAME}},
                max_tokens=tokens,
                temperature=0.15,
            )
            try:
                payload = parse_wbs_tool_payload(response)
                break
            except CopilotLLMError:
                can_retry = response.finish_reason in ("length", "tool_calls") and tokens < ceiling
                if not can_retry or attempt == 2:
                    raise
                tokens = min(max(tokens + math.ceil(tokens * 0.5), tokens + 500), ceiling)
                log.warning(
                    "Retrying WBS generation after incomplete tool output",
                    attempt=attempt + 1,
                    finish_reason=response.finish_reason,
                    max_tokens=tokens,
                )

        try:
            parsed = GeneratedWbsPayload.model_validate(payload)
        except ValidationError as e:
            raise CopilotLLMError(
                "Copilot returned invalid WBS items.", kind="server", detail=e.errors()
            ) from e

        items = [item.model_dump(by_alias=True, exclude_none=True) for item in parsed.items]
        return ToolResult(
            content=_dumps({"items": items}),
            finish_reason=response.finish_reason if response else None,
            raw={
                "toolCalls": [call.to_payload() for call in response.tool_calls] if response else None,
                "llmResponse": response.raw_response if response else None,
            },
        )

    async def summarize_artifact(self, tool_input: schemas.SummarizeArtifactInput) -> ToolResult:
        label = (
            f"{tool_input.artifact_type} ({tool_input.original_name})"
            if tool_input.original_name
            else tool_input.artifact_type
        )
        storage = tool_input.mode == "storage"
        max_tokens = tool_input.max_tokens or (
            STORAGE_SUMMARY_MAX_TOKENS if storage else PROMPT_SUMMARY_MAX_TOKENS
        )
        prompt = build_artifact_summary_prompt(
            tool_input.project_name,
            label,
            STORAGE_SUMMARY_INSTRUCTIONS if storage else PROMPT_SUMMARY_INSTRUCTIONS,
            tool_input.raw_text,
        )
        response = await self.provider.complete(
            prompt.messages,
            system_prompt=prompt.system_prompt,
            max_tokens=max_tokens,
            temperature=0.2,
        )
        return ToolResult(
            content=(response.content or "").strip(),
            finish_reason=response.finish_reason,
            raw=response.raw_response,
        )

    # --- Roles ---

    async def list_roles(self, tool_input: schemas.ListRolesInput) -> ToolResult:
        roles = await self.service.list_roles()
        return ToolResult(content=_dumps({"roles": roles}), raw=roles)

    async def create_role(self, tool_input: schemas.CreateRoleInput) -> ToolResult:
        role = await self.service.create_role(tool_input.name, tool_input.rate)
        return ToolResult(content=_dumps({"role": role}), raw=role)

    async def update_role(self, tool_input: schemas.UpdateRoleInput) -> ToolResult:
        role = await self.service.update_role(tool_input.role_id, name=tool_input.name, rate=tool_input.rate)
        return ToolResult(content=_dumps({"role": role}), raw=role)

    # --- Quote ---

    async def get_pricing_defaults(self, tool_input: schemas.GetPricingDefaultsInput) -> ToolResult:
        defaults = await self.service.get_pricing_defaults()
        return ToolResult(content=_dumps(defaults), raw=defaults)

    async def update_pricing_defaults(self, tool_input: schemas.UpdatePricingDefaultsInput) -> ToolResult:
        updated = await self.service.update_pricing_defaults(tool_input.overhead_fee)
        return ToolResult(content=_dumps(updated), raw=updated)

    async def generate_quote_terms(self, tool_input: schemas.GenerateQuoteTermsInput) -> ToolResult:
        project = await self.service.get_project_metadata(tool_input.project_id) or {}
        prompt = build_quote_terms_prompt(
            project_name=tool_input.project_name or project.get("name") or "Untitled project",
            client_name=project.get("clientName"),
            subtotal=tool_input.subtotal,
            overhead_fee=tool_input.overhead_fee,
            total=tool_input.total,
            wbs_summary=tool_input.wbs_summary,
            instructions=tool_input.instructions,
        )
        response = await self.provider.complete(
            prompt.messages,
            system_prompt=prompt.system_prompt,
            max_tokens=QUOTE_TERMS_COMPLETION_TOKENS,
            temperature=0.3,
            response_format="json_object",
        )
        content = (response.content or "").strip()
        if not content:
            raise CopilotLLMError("Copilot did not return any quote terms content.", kind="server")

        try:
            terms = json.loads(content)
        except json.JSONDecodeError as e:
            raise CopilotLLMError("Copilot returned invalid quote terms JSON.", kind="server") from e
        if not (
            isinstance(terms, dict)
            and isinstance(terms.get("paymentTerms"), str)
            and isinstance(terms.get("timeline"), str)
        ):
            raise CopilotLLMError("Copilot returned invalid quote terms JSON.", kind="server")

        return ToolResult(content=_dumps(terms), raw=terms, finish_reason=response.finish_reason)

    def definitions(self) -> list[ToolDefinition]:
        return [
            ToolDefinition(
                ToolName.GENERATE_BUSINESS_CASE,
                "Generates a Business Case draft from project artifacts. Requires projectId.",
                schemas.GenerateBusinessCaseInput,
                self.generate_business_case,
            ),
            ToolDefinition(
                ToolName.GENERATE_REQUIREMENTS,
                "Generates a Requirements summary from the Business Case. Requires projectId.",
                schemas.GenerateRequirementsInput,
                self.generate_requirements,
            ),
            ToolDefinition(
                ToolName.GENERATE_SOLUTION,
                "Generates a Solution Architecture draft from Requirements. Requires projectId.",
                schemas.GenerateSolutionInput,
                self.generate_solution,
            ),
            ToolDefinition(
                ToolName.GENERATE_WBS_ITEMS,
                "Generates WBS items from the Solution Architecture. Requires projectId.",
                schemas.GenerateWbsItemsInput,
                self.generate_wbs_items,
            ),
            ToolDefinition(
                ToolName.UPSERT_WBS_ITEMS,
                "Add or edit specific WBS rows without overwriting unspecified items.",
                schemas.UpsertWbsItemsInput,
                self.upsert_wbs_items,
            ),
            ToolDefinition(
                ToolName.REMOVE_WBS_ITEMS,
                "Remove one or more WBS rows by id.",
                schemas.RemoveWbsItemsInput,
                self.remove_wbs_items,
            ),
            ToolDefinition(
                ToolName.SUMMARIZE_ARTIFACT,
                "Summarizes a raw artifact text file. Internal use mainly.",
                schemas.SummarizeArtifactInput,
                self.summarize_artifact,
            ),
            ToolDefinition(
                ToolName.SEARCH_PROJECTS,
                "Search for projects by name.",
                schemas.SearchProjectsInput,
                self.search_projects,
            ),
            ToolDefinition(
                ToolName.GET_PROJECT_DETAILS,
                "Get full project metadata, current stage, and content of all stages.",
                schemas.GetProjectDetailsInput,
                self.get_project_details,
            ),
            ToolDefinition(
                ToolName.LIST_ROLES,
                "List all available delivery roles and their rates.",
                schemas.ListRolesInput,
                self.list_roles,
            ),
            ToolDefinition(
                ToolName.CREATE_ROLE,
                "Create a new delivery role.",
                schemas.CreateRoleInput,
                self.create_role,
            ),
            ToolDefinition(
                ToolName.UPDATE_ROLE,
                "Update an existing delivery role (rate or name).",
                schemas.UpdateRoleInput,
                self.update_role,
            ),
            ToolDefinition(
                ToolName.GET_PRICING_DEFAULTS,
                "Get current global pricing defaults (e.g. overhead fee).",
                schemas.GetPricingDefaultsInput,
                self.get_pricing_defaults,
            ),
            ToolDefinition(
                ToolName.UPDATE_PRICING_DEFAULTS,
                "Update global pricing defaults.",
                schemas.UpdatePricingDefaultsInput,
                self.update_pricing_defaults,
            ),
            ToolDefinition(
                ToolName.GENERATE_QUOTE_TERMS,
                "Generate payment terms and timeline for a quote based on WBS.",
                schemas.GenerateQuoteTermsInput,
                self.generate_quote_terms,
            ),
        ]
