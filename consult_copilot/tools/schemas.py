"""Typed input models for every tool.

Field aliases keep the camelCase argument names the model sees in the JSON
schema; handlers read the snake_case attributes.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

CUID_PATTERN = r"^c[^\s-]{8,}$"

Cuid = Annotated[str, StringConstraints(pattern=CUID_PATTERN)]
NonEmpty = Annotated[str, StringConstraints(min_length=1)]
AgreementKind = Literal["MSA", "SOW"]


class ToolInput(BaseModel):
    """Base for tool inputs; unknown keys are dropped."""

    model_config = ConfigDict(populate_by_name=True)


class StrictToolInput(ToolInput):
    """Tool inputs that reject unknown keys."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# --- Estimates drafting ---


class GenerateStageInput(ToolInput):
    project_id: Cuid = Field(alias="projectId")
    project_name: str | None = Field(default=None, alias="projectName")
    instructions: str | None = None


class GenerateBusinessCaseInput(GenerateStageInput):
    pass


class GenerateRequirementsInput(GenerateStageInput):
    pass


class GenerateSolutionInput(GenerateStageInput):
    pass


class GenerateWbsItemsInput(GenerateStageInput):
    pass


class WbsItemInput(ToolInput):
    id: Cuid | None = None
    task: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=240)]
    role_id: str | None = Field(default=None, alias="roleId")
    role_name: Annotated[str, StringConstraints(strip_whitespace=True, max_length=120)] | None = Field(
        default=None, alias="roleName"
    )
    role_rate: float | None = Field(default=None, alias="roleRate", ge=0)
    hours: float = Field(gt=0, le=10000)

    @model_validator(mode="after")
    def _require_role(self) -> "WbsItemInput":
        if not (self.role_id or self.role_name):
            raise ValueError("Each WBS item must reference a roleId or roleName.")
        return self


class UpsertWbsItemsInput(ToolInput):
    project_id: Cuid = Field(alias="projectId")
    items: list[WbsItemInput]


class RemoveWbsItemsInput(ToolInput):
    project_id: Cuid = Field(alias="projectId")
    item_ids: list[NonEmpty] = Field(alias="itemIds")


class SummarizeArtifactInput(ToolInput):
    project_id: Cuid = Field(alias="projectId")
    project_name: NonEmpty = Field(alias="projectName")
    artifact_id: NonEmpty = Field(alias="artifactId")
    artifact_type: NonEmpty = Field(alias="artifactType")
    original_name: str | None = Field(default=None, alias="originalName")
    raw_text: NonEmpty = Field(alias="rawText")
    mode: Literal["storage", "prompt"]
    max_tokens: int | None = Field(default=None, alias="maxTokens", gt=0)


# --- Read tools ---


class GetProjectDetailsInput(ToolInput):
    project_id: Cuid = Field(alias="projectId")


class SearchProjectsInput(ToolInput):
    query: NonEmpty


class ListAgreementsInput(ToolInput):
    project_id: Cuid = Field(alias="projectId")


class GetAgreementInput(ToolInput):
    agreement_id: Cuid = Field(alias="agreementId")


# --- Roles ---


class ListRolesInput(ToolInput):
    pass


class CreateRoleInput(ToolInput):
    name: Annotated[str, StringConstraints(min_length=1, max_length=100)]
    rate: float = Field(gt=0)


class UpdateRoleInput(ToolInput):
    role_id: NonEmpty = Field(alias="roleId")
    name: Annotated[str, StringConstraints(max_length=100)] | None = None
    rate: float | None = Field(default=None, gt=0)


# --- Quote ---


class GetPricingDefaultsInput(ToolInput):
    pass


class UpdatePricingDefaultsInput(ToolInput):
    overhead_fee: float = Field(alias="overheadFee", ge=0)


class GenerateQuoteTermsInput(ToolInput):
    project_id: Cuid = Field(alias="projectId")
    project_name: str | None = Field(default=None, alias="projectName")
    subtotal: float = Field(ge=0)
    overhead_fee: float = Field(alias="overheadFee", ge=0)
    total: float = Field(ge=0)
    wbs_summary: NonEmpty = Field(alias="wbsSummary")
    instructions: str | None = None


# --- Contracts ---


class CreateAgreementInput(StrictToolInput):
    type: AgreementKind
    counterparty: Annotated[str, StringConstraints(min_length=1, max_length=200)]
    project_id: Cuid | None = Field(default=None, alias="projectId")
    instructions: Annotated[str, StringConstraints(max_length=2000)] | None = None


class CreateAgreementsFromProjectInput(StrictToolInput):
    project_id: Cuid = Field(alias="projectId")
    agreement_types: list[AgreementKind] = Field(alias="agreementTypes", min_length=1, max_length=2)
    counterparty: Annotated[str, StringConstraints(min_length=1, max_length=200)] | None = None
    instructions: Annotated[str, StringConstraints(max_length=2000)] | None = None
    excluded_policy_ids: list[str] | None = Field(default=None, alias="excludedPolicyIds")
    run_auto_review: bool | None = Field(default=None, alias="runAutoReview")


class GenerateContractDraftInput(StrictToolInput):
    agreement_id: Cuid = Field(alias="agreementId")
    instructions: Annotated[str, StringConstraints(max_length=2000)] | None = None
    excluded_policy_ids: list[str] | None = Field(default=None, alias="excludedPolicyIds")


class ReviewContractDraftInput(StrictToolInput):
    agreement_id: Cuid | None = Field(default=None, alias="agreementId")
    agreement_type: Annotated[str, StringConstraints(max_length=50)] | None = Field(
        default=None, alias="agreementType"
    )
    incoming_draft: Annotated[str, StringConstraints(min_length=1, max_length=200000)] = Field(
        alias="incomingDraft"
    )
    excluded_policy_ids: list[str] | None = Field(default=None, alias="excludedPolicyIds")


class ValidateContractInput(StrictToolInput):
    agreement_id: Cuid = Field(alias="agreementId")


class CreateContractVersionInput(StrictToolInput):
    agreement_id: Cuid = Field(alias="agreementId")
    content: Annotated[str, StringConstraints(min_length=1, max_length=200000)]
    change_note: Annotated[str, StringConstraints(max_length=2000)] | None = Field(
        default=None, alias="changeNote"
    )


class UpdateContractNotesInput(StrictToolInput):
    agreement_id: Cuid = Field(alias="agreementId")
    notes: Annotated[str, StringConstraints(min_length=1, max_length=2000)]


class ApplyContractProposalsInput(StrictToolInput):
    agreement_id: Cuid = Field(alias="agreementId")
    decisions: dict[str, Literal["accepted", "rejected", "pending"]] | None = None
    change_note: Annotated[str, StringConstraints(max_length=2000)] | None = Field(
        default=None, alias="changeNote"
    )
    mark_approved: bool | None = Field(default=None, alias="markApproved")
