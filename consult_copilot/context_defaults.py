"""Inject the active entity id into tool arguments."""

from typing import Any

from consult_copilot.services import ExecutionContext
from consult_copilot.tools.names import ToolName

PROJECT_CONTEXT_TOOLS = frozenset(
    {
        ToolName.GENERATE_BUSINESS_CASE,
        ToolName.GENERATE_REQUIREMENTS,
        ToolName.GENERATE_SOLUTION,
        ToolName.GENERATE_WBS_ITEMS,
        ToolName.UPSERT_WBS_ITEMS,
        ToolName.REMOVE_WBS_ITEMS,
        ToolName.SUMMARIZE_ARTIFACT,
        ToolName.GET_PROJECT_DETAILS,
        ToolName.GENERATE_QUOTE_TERMS,
        ToolName.CREATE_AGREEMENTS_FROM_PROJECT,
    }
)

AGREEMENT_CONTEXT_TOOLS = frozenset(
    {
        ToolName.GET_AGREEMENT,
        ToolName.GENERATE_CONTRACT_DRAFT,
        ToolName.REVIEW_CONTRACT_DRAFT,
        ToolName.VALIDATE_CONTRACT,
        ToolName.CREATE_CONTRACT_VERSION,
        ToolName.UPDATE_CONTRACT_NOTES,
        ToolName.APPLY_CONTRACT_PROPOSALS,
    }
)


def apply_context_defaults(
    raw_args: Any, tool_name: ToolName | str, context: ExecutionContext
) -> dict[str, Any]:
    """Return a copy of the arguments with ``projectId``/``agreementId`` filled in.

    Non-object arguments become ``{}``. A key the model supplied is never
    overwritten, and nothing is injected without an active entity id.
    """
    args = dict(raw_args) if isinstance(raw_args, dict) else {}
    if not context.entity_id:
        return args

    name = ToolName.parse(tool_name)
    if name is None:
        return args

    if context.is_project and name in PROJECT_CONTEXT_TOOLS and "projectId" not in args:
        args["projectId"] = context.entity_id
    if context.is_agreement and name in AGREEMENT_CONTEXT_TOOLS and "agreementId" not in args:
        args["agreementId"] = context.entity_id
    return args
