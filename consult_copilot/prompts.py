"""System prompt and drafting prompt builders."""

from dataclasses import dataclass, field
from typing import Any

from consult_copilot.llm.types import Message
from consult_copilot.services import (
    ContractDraftingContext,
    ProjectDraftingContext,
    Stage,
)

ESTIMATES_SYSTEM_PROMPT = """You are the Estimates Copilot, a senior consulting assistant that drives a six-stage workflow:
1. Artifacts - inventory client inputs and missing data.
2. Business Case - craft the rationale for the project with measurable benefits.
3. Requirements - define scope, success criteria, and constraints.
4. Solution / Architecture - explain the delivery approach and target state.
5. Effort (WBS) - translate scope into roles and hours.
6. Quote - articulate commercial packaging and next steps.

Guardrails:
- Use information supplied in the context only; never fabricate data.
- Call out gaps or risks explicitly when evidence is missing.
- Keep tone consultative, concise, and executive-friendly.
- Prefer plain text with short paragraphs and bullets.
"""

CONTRACTS_SYSTEM_PROMPT = """You are the Contracts Copilot. You help draft, review, and validate
MSAs and SOWs against governance policies and the linked project estimate.
Only change agreement text through the provided tools, and explain what changed.
"""

CHAT_TOOL_GUIDANCE = """Use the available tools to read or update records instead of guessing.
When a tool reports an error or a blocked action, explain it to the user plainly and
do not retry the same call with identical arguments.
"""

STORAGE_SUMMARY_INSTRUCTIONS = [
    "- Capture concrete requirements, KPIs, integrations, data sources, constraints, and timelines.",
    "- Preserve any quantitative details (hours, KPIs, budgets, volumes).",
    "- Note explicit out-of-scope items, assumptions, and risks.",
    "- Include open questions or missing inputs the artifact calls out.",
]

PROMPT_SUMMARY_INSTRUCTIONS = [
    "- Summarize in concise bullets/paragraphs.",
    "- Highlight requirements, KPIs, constraints, timelines, integrations.",
    "- Include any explicit risks or open questions.",
    "- Keep < 600 tokens (~2400 characters).",
]


@dataclass
class PromptPayload:
    system_prompt: str
    messages: list[Message] = field(default_factory=list)


def _user(content: str) -> list[Message]:
    return [Message(role="user", content=content)]


def _block(title: str, body: str | None) -> str | None:
    if not body or not body.strip():
        return None
    return f"{title}:\n{body.strip()}"


def _join(parts: list[str | None]) -> str:
    return "\n\n".join(part for part in parts if part)


def build_chat_system_prompt(
    workflow: str | None,
    entity_id: str | None = None,
    entity_type: str | None = None,
    stage: Stage | None = None,
    view: str | None = None,
    read_only: bool = False,
) -> str:
    """Build the system prompt for the conversational tool loop."""
    base = CONTRACTS_SYSTEM_PROMPT if workflow == "contracts" else ESTIMATES_SYSTEM_PROMPT
    context_lines: list[str] = []
    if workflow:
        context_lines.append(f"Workflow: {workflow}")
    if entity_id:
        label = entity_type or ("agreement" if workflow == "contracts" else "project")
        context_lines.append(f"Active {label} id: {entity_id}")
    if stage is not None:
        context_lines.append(f"Current stage: {stage.label}")
    if view:
        context_lines.append(f"Current view: {view}")
    if read_only:
        context_lines.append("This record is read-only; only read tools are available.")
    return _join([base, CHAT_TOOL_GUIDANCE, "\n".join(context_lines) or None])


def build_business_case_prompt(
    context: ProjectDraftingContext, instructions: str | None = None
) -> PromptPayload:
    content = _join(
        [
            f"Project: {context.project_name}",
            f"Client: {context.client_name}" if context.client_name else None,
            _block("Artifacts digest", context.artifacts_digest),
            _block("Additional instructions", instructions),
            "Produce a business case draft with sections for Scope, Outcomes, Constraints and Next Steps. "
            "Keep it under ~600 words.",
        ]
    )
    return PromptPayload(ESTIMATES_SYSTEM_PROMPT, _user(content))


def build_requirements_prompt(
    context: ProjectDraftingContext,
    business_case: str,
    instructions: str | None = None,
) -> PromptPayload:
    content = _join(
        [
            f"Project: {context.project_name}",
            f"Client: {context.client_name}" if context.client_name else None,
            _block("Artifacts digest", context.artifacts_digest),
            _block("Business Case draft", business_case),
            _block("Requested focus", instructions),
            "Draft the Requirements stage: functional and non-functional requirements, "
            "success criteria, assumptions and open questions.",
        ]
    )
    return PromptPayload(ESTIMATES_SYSTEM_PROMPT, _user(content))


def build_solution_prompt(
    context: ProjectDraftingContext,
    business_case: str,
    requirements: str,
    instructions: str | None = None,
) -> PromptPayload:
    content = _join(
        [
            f"Project: {context.project_name}",
            f"Client: {context.client_name}" if context.client_name else None,
            _block("Artifacts digest", context.artifacts_digest),
            _block("Business Case draft", business_case),
            _block("Requirements draft", requirements),
            _block("Requested focus", instructions),
            "Draft the Solution Architecture: target state, components, integrations, "
            "delivery approach and key risks.",
        ]
    )
    return PromptPayload(ESTIMATES_SYSTEM_PROMPT, _user(content))


def build_wbs_prompt(
    context: ProjectDraftingContext,
    solution: str,
    roles: list[dict[str, Any]],
    instructions: str | None = None,
) -> PromptPayload:
    role_lines = "\n".join(
        f"- {role.get('id')}: {role.get('name')} (${role.get('rate')}/h)" for role in roles
    )
    content = _join(
        [
            f"Project: {context.project_name}",
            f"Client: {context.client_name}" if context.client_name else None,
            _block("Business Case draft", context.business_case),
            _block("Requirements draft", context.requirements),
            _block("Solution draft", solution),
            _block("Delivery role catalog", role_lines),
            _block("Additional instructions", instructions),
            "Return structured WBS rows (task, roleId, roleName, hours) covering discovery, "
            "architecture, build, testing, deployment, knowledge transfer and project management.",
        ]
    )
    return PromptPayload(ESTIMATES_SYSTEM_PROMPT, _user(content))


def build_quote_terms_prompt(
    project_name: str,
    client_name: str | None,
    subtotal: float,
    overhead_fee: float,
    total: float,
    wbs_summary: str,
    instructions: str | None = None,
) -> PromptPayload:
    content = _join(
        [
            f"Project: {project_name}",
            f"Client: {client_name}" if client_name else None,
            f"WBS Summary:\n{wbs_summary}",
            "Pricing Breakdown:\n"
            f"- Subtotal (WBS items): ${subtotal:,.2f}\n"
            f"- Overhead Fee: ${overhead_fee:,.2f}\n"
            f"- Total: ${total:,.2f}",
            f"Additional instructions: {instructions}" if instructions else None,
            "Generate payment terms and a work timeline for this quote. Return a JSON object with:\n"
            "- paymentTerms: string (milestone-style, percentages summing to 100%)\n"
            "- timeline: string (200-500 words describing phases, dates and dependencies)",
        ]
    )
    return PromptPayload(ESTIMATES_SYSTEM_PROMPT, _user(content))


def build_artifact_summary_prompt(
    project_name: str | None,
    artifact_label: str,
    instructions: list[str],
    raw_text: str,
) -> PromptPayload:
    system_prompt = (
        "You summarize client discovery artifacts for the Estimates Copilot. Preserve all "
        "critical requirements, constraints, and metrics so downstream stages can rely on the summary."
    )
    lines = [
        f"Project: {project_name}" if project_name else None,
        f"Artifact: {artifact_label}",
        "Instructions:",
        *instructions,
        "",
        "Full artifact text:",
        raw_text,
    ]
    content = "\n".join(line for line in lines if line is not None)
    return PromptPayload(system_prompt, _user(content))


def build_contract_draft_prompt(
    agreement_type: str,
    counterparty: str,
    context: ContractDraftingContext,
    instructions: str | None = None,
) -> PromptPayload:
    system_prompt = (
        f"You are an expert legal drafter for a consulting firm. Draft a {agreement_type} "
        f"for {counterparty}.\n"
        "Strictly follow the GOVERNANCE POLICIES in the context. When LINKED ESTIMATE DATA is "
        "present, use its exact scope items, total cost, payment terms and timeline.\n"
        "Output only the agreement text in Markdown, without code fences or preamble. "
        "Use placeholders such as [Date] for missing details."
    )
    content = _join(
        [
            f"Here is the context for the agreement:\n\n{context.digest_text}",
            _block("ADDITIONAL INSTRUCTIONS", instructions),
            f"Draft the {agreement_type} now.",
        ]
    )
    return PromptPayload(system_prompt, _user(content))


def build_contract_review_prompt(
    agreement_type: str,
    context: ContractDraftingContext,
    incoming_draft: str,
) -> PromptPayload:
    system_prompt = (
        f"You are a strict legal reviewer. Review an incoming {agreement_type} against our "
        "GOVERNANCE POLICIES. Output a JSON object with a \"proposals\" array; each proposal has "
        "\"originalText\", \"proposedText\" and \"rationale\"."
    )
    content = _join(
        [
            f"CONTEXT & POLICIES:\n{context.digest_text}",
            f"INCOMING DRAFT TO REVIEW:\n{incoming_draft}",
            "Generate the review proposals in JSON format.",
        ]
    )
    return PromptPayload(system_prompt, _user(content))


def build_contract_validation_prompt(
    agreement_type: str,
    context: ContractDraftingContext,
    current_content: str,
) -> PromptPayload:
    system_prompt = (
        f"You are a strict contract auditor. Validate the current {agreement_type} text against "
        "the LINKED ESTIMATE DATA and GOVERNANCE POLICIES. Check scope, price, terms and policy "
        "mismatches. Output a JSON object with an \"issues\" array; each issue has \"type\" "
        "(SCOPE|PRICE|TERMS|POLICY), \"severity\" (HIGH|MEDIUM|LOW), \"description\" and "
        "\"recommendation\". Return an empty array when there are no issues."
    )
    content = _join(
        [
            f"CONTEXT (Estimate & Policies):\n{context.digest_text}",
            f"CURRENT AGREEMENT TEXT:\n{current_content}",
            "Perform the validation analysis and return JSON.",
        ]
    )
    return PromptPayload(system_prompt, _user(content))
