"""Domain-service boundary used by tool handlers and side effects.

Persistence lives outside this package. Handlers talk to it through the two
protocols below; tests and the host application provide implementations.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol

Workflow = Literal["estimates", "contracts"]
EntityType = Literal["project", "agreement"]
AgreementType = Literal["MSA", "SOW"]


class Stage(str, Enum):
    """Estimate lifecycle stages, in progression order."""

    ARTIFACTS = "ARTIFACTS"
    BUSINESS_CASE = "BUSINESS_CASE"
    REQUIREMENTS = "REQUIREMENTS"
    SOLUTION = "SOLUTION"
    EFFORT = "EFFORT"
    QUOTE = "QUOTE"
    DELIVERED = "DELIVERED"

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)

    @property
    def label(self) -> str:
        """Human label, e.g. ``BUSINESS_CASE`` -> ``Business Case``."""
        return " ".join(part.capitalize() for part in self.value.split("_"))

    @classmethod
    def parse(cls, value: "Stage | str | None") -> "Stage | None":
        """Parse a stage name; unknown or empty values return None."""
        if value is None or isinstance(value, Stage):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)


@dataclass(frozen=True)
class ExecutionContext:
    """Per-request workflow context. Immutable for one orchestrator run."""

    workflow: Workflow | None = None
    entity_id: str | None = None
    entity_type: EntityType | None = None
    stage: Stage | None = None
    read_only: bool = False

    @property
    def is_project(self) -> bool:
        return self.entity_type == "project" or (
            self.entity_type is None and self.workflow == "estimates"
        )

    @property
    def is_agreement(self) -> bool:
        return self.entity_type == "agreement" or (
            self.entity_type is None and self.workflow == "contracts"
        )


@dataclass(frozen=True)
class ProjectLockContext:
    """Stage and write-lock state of an estimate project."""

    project_id: str
    stage: Stage | None = None
    read_only: bool = False


@dataclass(frozen=True)
class AgreementLockContext:
    """Lock state of an agreement, derived from its linked project."""

    agreement_id: str
    project_id: str | None = None
    project_stage: Stage | None = None
    read_only: bool = False


@dataclass
class ProjectDraftingContext:
    """Upstream material handed to the narrative drafting prompts."""

    project_id: str
    project_name: str
    client_name: str | None = None
    artifacts_digest: str = ""
    business_case: str | None = None
    requirements: str | None = None
    solution: str | None = None


@dataclass
class ContractDraftingContext:
    """Agreement plus the policy/estimate digest used by contract prompts."""

    agreement: dict[str, Any] | None
    digest_text: str = ""
    policies: list[dict[str, Any]] = field(default_factory=list)


class EstimatesService(Protocol):
    """Estimates, roles and quote persistence."""

    async def get_project_with_details(self, project_id: str) -> dict[str, Any]: ...

    async def get_project_metadata(self, project_id: str) -> dict[str, Any] | None: ...

    async def search_projects(self, query: str) -> list[dict[str, Any]]: ...

    async def get_drafting_context(self, project_id: str) -> ProjectDraftingContext: ...

    async def get_project_lock_context(self, project_id: str) -> ProjectLockContext: ...

    async def upsert_wbs_items(
        self, project_id: str, items: list[dict[str, Any]]
    ) -> list[dict[str, Any]]: ...

    async def remove_wbs_items(self, project_id: str, item_ids: list[str]) -> list[dict[str, Any]]: ...

    async def list_roles(self) -> list[dict[str, Any]]: ...

    async def create_role(self, name: str, rate: float) -> dict[str, Any]: ...

    async def update_role(
        self, role_id: str, name: str | None = None, rate: float | None = None
    ) -> dict[str, Any]: ...

    async def get_pricing_defaults(self) -> dict[str, Any]: ...

    async def update_pricing_defaults(self, overhead_fee: float) -> dict[str, Any]: ...

    async def get_quote(self, project_id: str) -> dict[str, Any] | None: ...

    async def save_quote(self, project_id: str, **fields: Any) -> dict[str, Any]: ...


class ContractsService(Protocol):
    """Agreements, versions and policy review persistence."""

    async def list_agreements(self, project_id: str) -> list[dict[str, Any]]: ...

    async def get_agreement(self, agreement_id: str) -> dict[str, Any] | None: ...

    async def get_latest_version(self, agreement_id: str) -> dict[str, Any] | None: ...

    async def get_agreement_lock_context(self, agreement_id: str) -> AgreementLockContext: ...

    async def get_drafting_context(
        self,
        agreement_id: str | None,
        agreement_type: str | None = None,
        excluded_policy_ids: list[str] | None = None,
    ) -> ContractDraftingContext: ...

    async def create_agreement(
        self, agreement_type: AgreementType, counterparty: str, project_id: str | None = None
    ) -> dict[str, Any]: ...

    async def create_version(
        self, agreement_id: str, content: str, change_note: str | None = None
    ) -> dict[str, Any]: ...

    async def update_agreement_notes(self, agreement_id: str, notes: str) -> dict[str, Any] | None: ...

    async def apply_proposals(
        self,
        agreement_id: str,
        decisions: dict[str, str] | None = None,
        change_note: str | None = None,
        mark_approved: bool | None = None,
    ) -> dict[str, Any]: ...
