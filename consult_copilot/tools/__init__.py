"""Tool catalog for the consulting copilot."""

from consult_copilot.llm.base import LLMProvider
from consult_copilot.services import ContractsService, EstimatesService
from consult_copilot.tools.contracts import ContractsTools
from consult_copilot.tools.estimates import EstimatesTools
from consult_copilot.tools.names import ToolName, format_tool_label
from consult_copilot.tools.registry import (
    ToolDefinition,
    ToolRegistry,
    ToolResult,
    sanitize_tool_name,
)


def build_tool_registry(
    estimates: EstimatesService,
    contracts: ContractsService,
    provider: LLMProvider,
) -> ToolRegistry:
    """Build the full tool catalog against the given services."""
    registry = ToolRegistry()
    registry.register_all(EstimatesTools(estimates, provider).definitions())
    registry.register_all(ContractsTools(contracts, estimates, provider).definitions())
    return registry


__all__ = [
    "ContractsTools",
    "EstimatesTools",
    "ToolDefinition",
    "ToolName",
    "ToolRegistry",
    "ToolResult",
    "build_tool_registry",
    "format_tool_label",
    "sanitize_tool_name",
]
