"""Prompt management - templates and prompt building."""

from e2e_agent.prompts.builder import DEFAULT_HTML_BUDGET, PromptBuilder, get_prompt_builder
from e2e_agent.prompts.templates import (
    COMMAND_GENERATION_PROMPT,
    HEALING_PROMPT,
    PLANNING_PROMPT,
    SYSTEM_PROMPT,
    PromptTemplate,
)

__all__ = [
    "DEFAULT_HTML_BUDGET",
    "PromptBuilder",
    "PromptTemplate",
    "get_prompt_builder",
    "SYSTEM_PROMPT",
    "PLANNING_PROMPT",
    "COMMAND_GENERATION_PROMPT",
    "HEALING_PROMPT",
]
