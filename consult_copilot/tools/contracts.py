"""Contracts tool handlers."""

import json
from typing import Any

from consult_copilot.exceptions import CopilotLLMError
from consult_copilot.llm.base import LLMProvider
from consult_copilot.llm.retry import call_with_content_retry
from consult_copilot.llm.types import LLMResponse
from consult_copilot.logging import get_logger
from consult_copilot.prompts import (
    PromptPayload,
    build_contract_draft_prompt,
    build_contract_review_prompt,
    build_contract_validation_prompt,
)
from consult_copilot.services import ContractsService, EstimatesService
from consult_copilot.tools import schemas
from consult_copilot.tools.names import ToolName
from consult_copilot.tools.registry import ToolDefinition, ToolResult

log = get_logger(__name__)

EMPTY_VERSION_HINT = (
    "The latest version of this agreement is empty. No text has been generated or saved yet."
)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class ContractsTools:
    """Handlers for ``contracts.*`` tools."""

    def __init__(
        self,
        service: ContractsService,
        estimates: EstimatesService,
        provider: LLMProvider,
    ):
        self.service = service
        self.estimates = estimates
        self.provider = provider

    async def _complete_with_retry(
        self,
        label: str,
        prompt: PromptPayload,
        initial_tokens: int,
        max_tokens: int,
        temperature: float,
        response_format: str = "text",
    ) -> tuple[str, LLMResponse | None]:
        async def call(tokens: int) -> LLMResponse:
            return await self.provider.complete(
                prompt.messages,
                system_prompt=prompt.system_prompt,
                max_tokens=tokens,
                temperature=temperature,
                response_format=response_format,
            )

        outcome = await call_with_content_retry(label, initial_tokens, call, max_tokens=max_tokens)
        return outcome.content, outcome.result

    async def _draft_text(
        self,
        agreement_id: str,
        instructions: str | None,
        excluded_policy_ids: list[str] | None,
    ) -> tuple[str, LLMResponse | None]:
        context = await self.service.get_drafting_context(
            agreement_id, excluded_policy_ids=excluded_policy_ids
        )
        if not context.agreement:
            raise CopilotLLMError("Agreement not found", kind="bad_request")

        prompt = build_contract_draft_prompt(
            agreement_type=str(context.agreement.get("type", "Agreement")),
            counterparty=str(context.agreement.get("counterparty", "")),
            context=context,
            instructions=instructions,
        )
        return await self._complete_with_retry(
            "contract-draft", prompt, initial_tokens=5000, max_tokens=12000, temperature=0.3
        )

    async def _review_text(
        self,
        agreement_id: str | None,
        agreement_type: str | None,
        incoming_draft: str,
        excluded_policy_ids: list[str] | None,
    ) -> tuple[str, LLMResponse | None]:
        context = await self.service.get_drafting_context(
            agreement_id, agreement_type=agreement_type, excluded_policy_ids=excluded_policy_ids
        )
        resolved_type = (context.agreement or {}).get("type") or agreement_type or "Contract"
        prompt = build_contract_review_prompt(str(resolved_type), context, incoming_draft)
        return await self._complete_with_retry(
            "contract-review",
            prompt,
            initial_tokens=6000,
            max_tokens=12000,
            temperature=0.2,
            response_format="json_object",
        )

    # --- Read tools ---

    async def list_agreements(self, tool_input: schemas.ListAgreementsInput) -> ToolResult:
        agreements = await self.service.list_agreements(tool_input.project_id)
        return ToolResult(content=_dumps({"agreements": agreements}), raw=agreements)

    async def get_agreement(self, tool_input: schemas.GetAgreementInput) -> ToolResult:
        agreement = await self.service.get_agreement(tool_input.agreement_id)
        if not agreement:
            raise CopilotLLMError("Agreement not found", kind="bad_request")

        latest_version = await self.service.get_latest_version(tool_input.agreement_id)
        result = {**agreement, "latestVersion": latest_version}
        if latest_version and not latest_version.get("content"):
            result["_hint"] = EMPTY_VERSION_HINT
        return ToolResult(content=_dumps(result), raw=result)

    # --- Mutations ---

    async def create_agreement(self, tool_input: schemas.CreateAgreementInput) -> ToolResult:
        agreement = await self.service.create_agreement(
            tool_input.type, tool_input.counterparty, project_id=tool_input.project_id
        )
        return ToolResult(content=_dumps(agreement), raw=agreement)

    async def create_agreements_from_project(
        self, tool_input: schemas.CreateAgreementsFromProjectInput
    ) -> ToolResult:
        project = await self.estimates.get_project_metadata(tool_input.project_id)
        if not project:
            raise CopilotLLMError("Project not found", kind="bad_request")

        counterparty = (
            tool_input.counterparty
            or project.get("clientName")
            or f"{project.get('name', 'Project')} Client"
        )

        created: list[dict[str, Any]] = []
        for agreement_type in tool_input.agreement_types:
            agreement = await self.service.create_agreement(
                agreement_type, counterparty, project_id=tool_input.project_id
            )
            agreement_id = str(agreement.get("id"))
            entry: dict[str, Any] = {"type": agreement_type, "agreementId": agreement_id}
            try:
                draft, _ = await self._draft_text(
                    agreement_id, tool_input.instructions, tool_input.excluded_policy_ids
                )
                if not draft:
                    raise CopilotLLMError("Copilot did not return any agreement content.", kind="server")
                await self.service.create_version(agreement_id, draft, change_note="Initial AI draft")

                run_review = (
                    tool_input.run_auto_review
                    if tool_input.run_auto_review is not None
                    else agreement_type == "SOW"
                )
                if run_review:
                    review, _ = await self._review_text(
                        agreement_id, agreement_type, draft, tool_input.excluded_policy_ids
                    )
                    entry["reviewed"] = bool(review)
            except CopilotLLMError as e:
                log.warning(
                    "Draft generation failed for new agreement",
                    agreement_id=agreement_id,
                    agreement_type=agreement_type,
                    error=e.message,
                )
                entry["error"] = e.message
            created.append(entry)

        return ToolResult(content=_dumps({"agreements": created}), raw=created)

    async def generate_draft(self, tool_input: schemas.GenerateContractDraftInput) -> ToolResult:
        content, response = await self._draft_text(
            tool_input.agreement_id, tool_input.instructions, tool_input.excluded_policy_ids
        )
        return ToolResult(
            content=content,
            finish_reason=response.finish_reason if response else None,
            raw=response.raw_response if response else None,
        )

    async def review_draft(self, tool_input: schemas.ReviewContractDraftInput) -> ToolResult:
        content, response = await self._review_text(
            tool_input.agreement_id,
            tool_input.agreement_type,
            tool_input.incoming_draft,
            tool_input.excluded_policy_ids,
        )
        return ToolResult(
            content=content,
            finish_reason=response.finish_reason if response else None,
            raw=response.raw_response if response else None,
        )

    async def validate_analysis(self, tool_input: schemas.ValidateContractInput) -> ToolResult:
        context = await self.service.get_drafting_context(tool_input.agreement_id)
        if not context.agreement:
            raise CopilotLLMError("Agreement not found", kind="bad_request")

        latest_version = await self.service.get_latest_version(tool_input.agreement_id)
        if not latest_version or not latest_version.get("content"):
            raise CopilotLLMError("Agreement has no content to validate.", kind="bad_request")

        prompt = build_contract_validation_prompt(
            str(context.agreement.get("type", "Agreement")),
            context,
            str(latest_version["content"]),
        )
        content, response = await self._complete_with_retry(
            "contract-validate",
            prompt,
            initial_tokens=6000,
            max_tokens=8000,
            temperature=0.1,
            response_format="json_object",
        )
        return ToolResult(
            content=content,
            finish_reason=response.finish_reason if response else None,
            raw=response.raw_response if response else None,
        )

    async def create_version(self, tool_input: schemas.CreateContractVersionInput) -> ToolResult:
        version = await self.service.create_version(
            tool_input.agreement_id, tool_input.content, change_note=tool_input.change_note
        )
        return ToolResult(content=_dumps(version), raw=version)

    async def update_notes(self, tool_input: schemas.UpdateContractNotesInput) -> ToolResult:
        agreement = await self.service.update_agreement_notes(tool_input.agreement_id, tool_input.notes)
        if not agreement:
            raise CopilotLLMError("Agreement not found", kind="bad_request")
        return ToolResult(content=_dumps(agreement), raw=agreement)

    async def apply_proposals(self, tool_input: schemas.ApplyContractProposalsInput) -> ToolResult:
        result = await self.service.apply_proposals(
            tool_input.agreement_id,
            decisions=dict(tool_input.decisions) if tool_input.decisions else None,
            change_note=tool_input.change_note,
            mark_approved=tool_input.mark_approved,
        )
        summary = {
            "agreementId": result.get("agreementId", tool_input.agreement_id),
            "versionId": (result.get("version") or {}).get("id"),
            "acceptedCount": result.get("acceptedCount", 0),
            "changeNote": result.get("changeNote"),
        }
        return ToolResult(content=_dumps(summary), raw=result)

    def definitions(self) -> list[ToolDefinition]:
        return [
            ToolDefinition(
                ToolName.LIST_AGREEMENTS,
                "List all agreements associated with a project.",
                schemas.ListAgreementsInput,
                self.list_agreements,
            ),
            ToolDefinition(
                ToolName.GET_AGREEMENT,
                "Get details of a specific agreement, including its latest version content.",
                schemas.GetAgreementInput,
                self.get_agreement,
            ),
            ToolDefinition(
                ToolName.CREATE_AGREEMENT,
                "Create a new Agreement (MSA or SOW).",
                schemas.CreateAgreementInput,
                self.create_agreement,
            ),
            ToolDefinition(
                ToolName.CREATE_AGREEMENTS_FROM_PROJECT,
                "Create one or more agreements for a project using its estimates and artifacts.",
                schemas.CreateAgreementsFromProjectInput,
                self.create_agreements_from_project,
            ),
            ToolDefinition(
                ToolName.GENERATE_CONTRACT_DRAFT,
                "Generate the content for an agreement based on instructions and policy.",
                schemas.GenerateContractDraftInput,
                self.generate_draft,
            ),
            ToolDefinition(
                ToolName.REVIEW_CONTRACT_DRAFT,
                "Review an incoming contract draft against policies.",
                schemas.ReviewContractDraftInput,
                self.review_draft,
            ),
            ToolDefinition(
                ToolName.VALIDATE_CONTRACT,
                "Validate an agreement against the project estimate.",
                schemas.ValidateContractInput,
                self.validate_analysis,
            ),
            ToolDefinition(
                ToolName.CREATE_CONTRACT_VERSION,
                "Create a new version of a contract with updated content.",
                schemas.CreateContractVersionInput,
                self.create_version,
            ),
            ToolDefinition(
                ToolName.UPDATE_CONTRACT_NOTES,
                "Update the notes for an agreement.",
                schemas.UpdateContractNotesInput,
                self.update_notes,
            ),
            ToolDefinition(
                ToolName.APPLY_CONTRACT_PROPOSALS,
                "Apply accepted policy review proposals to an agreement and save a new version.",
                schemas.ApplyContractProposalsInput,
                self.apply_proposals,
            ),
        ]
