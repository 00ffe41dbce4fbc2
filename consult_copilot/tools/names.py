"""Closed catalog of internal tool identifiers."""

from enum import Enum


class ToolName(str, Enum):
    """Internal dotted tool names. The value is what the transcript shows."""

    GENERATE_BUSINESS_CASE = "estimates.generateBusinessCaseFromArtifacts"
    GENERATE_REQUIREMENTS = "estimates.generateRequirementsSummary"
    GENERATE_SOLUTION = "estimates.generateSolutionArchitecture"
    GENERATE_WBS_ITEMS = "estimates.generateWbsItems"
    UPSERT_WBS_ITEMS = "estimates.upsertWbsItems"
    REMOVE_WBS_ITEMS = "estimates.removeWbsItems"
    SUMMARIZE_ARTIFACT = "estimates.summarizeArtifact"
    SEARCH_PROJECTS = "estimates.searchProjects"
    GET_PROJECT_DETAILS = "estimates.getProjectDetails"

    LIST_ROLES = "roles.list"
    CREATE_ROLE = "roles.create"
    UPDATE_ROLE = "roles.update"

    GET_PRICING_DEFAULTS = "quote.getPricingDefaults"
    UPDATE_PRICING_DEFAULTS = "quote.updatePricingDefaults"
    GENERATE_QUOTE_TERMS = "quote.generateTerms"

    LIST_AGREEMENTS = "contracts.listAgreements"
    GET_AGREEMENT = "contracts.getAgreement"
    CREATE_AGREEMENT = "contracts.create"
    CREATE_AGREEMENTS_FROM_PROJECT = "contracts.createFromProject"
    GENERATE_CONTRACT_DRAFT = "contracts.generateDraft"
    REVIEW_CONTRACT_DRAFT = "contracts.reviewDraft"
    VALIDATE_CONTRACT = "contracts.validateAnalysis"
    CREATE_CONTRACT_VERSION = "contracts.createVersion"
    UPDATE_CONTRACT_NOTES = "contracts.updateNotes"
    APPLY_CONTRACT_PROPOSALS = "contracts.applyProposals"

    @property
    def namespace(self) -> str:
        return self.value.split(".", 1)[0]

    @property
    def label(self) -> str:
        return format_tool_label(self.value)

    @classmethod
    def parse(cls, value: "ToolName | str") -> "ToolName | None":
        if isinstance(value, ToolName):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


def format_tool_label(name: "ToolName | str") -> str:
    """Display label for a tool, e.g. ``estimates › upsertWbsItems``."""
    value = name.value if isinstance(name, ToolName) else str(name)
    return value.replace(".", " › ")
