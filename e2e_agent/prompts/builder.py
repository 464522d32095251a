"""
Prompt builder for decomposition and self-healing.

Combines the templates in :mod:`e2e_agent.prompts.templates` with runtime
context: the instruction, the page snapshot, the commands produced so far,
and failure history.
"""

from typing import TYPE_CHECKING, Any

from loguru import logger

from e2e_agent.core.page import truncate_html
from e2e_agent.prompts.templates import (
    COMMAND_GENERATION_PROMPT,
    DISCOVERY_PROMPT,
    HEALING_PROMPT,
    HEALING_SYSTEM_PROMPT,
    ITERATION_PROMPT,
    PLANNING_PROMPT,
    PLANNING_SYSTEM_PROMPT,
    SELECTOR_REFINEMENT_PROMPT,
    SELECTOR_REFINEMENT_SYSTEM_PROMPT,
    SYSTEM_PROMPT,
    VALIDATION_REFINEMENT_PROMPT,
    PromptTemplate,
)

if TYPE_CHECKING:
    from e2e_agent.dsl.models import Command, Selector
    from e2e_agent.healing.failure_analyzer import FailureContext

DEFAULT_HTML_BUDGET = 4000


# =============================================================================
# PROMPT BUILDER
# =============================================================================


class PromptBuilder:
    """
    Build prompts from templates and page context.

    Page markup is truncated to ``html_budget`` characters before it is
    embedded in any prompt.

    Example:
        >>> builder = PromptBuilder(html_budget=2000)
        >>> prompt = builder.build_command_generation_prompt(
        ...     step="Click the login button",
        ...     instruction="Log in as admin",
        ...     html='<button id="login">Login</button>',
        ... )
        >>> "STEP: Click the login button" in prompt
        True
    """

    def __init__(self, html_budget: int = DEFAULT_HTML_BUDGET) -> None:
        self.html_budget = html_budget
        self._templates: dict[str, PromptTemplate] = {
            template.name: template
            for template in (
                SYSTEM_PROMPT,
                DISCOVERY_PROMPT,
                ITERATION_PROMPT,
                PLANNING_SYSTEM_PROMPT,
                PLANNING_PROMPT,
                COMMAND_GENERATION_PROMPT,
                VALIDATION_REFINEMENT_PROMPT,
                HEALING_SYSTEM_PROMPT,
                HEALING_PROMPT,
                SELECTOR_REFINEMENT_SYSTEM_PROMPT,
                SELECTOR_REFINEMENT_PROMPT,
            )
        }

    def _html(self, html: str) -> str:
        return truncate_html(html, self.html_budget)

    # -------------------------------------------------------------------------
    # COMMAND GENERATION
    # -------------------------------------------------------------------------

    def build_system_prompt(self) -> str:
        """System prompt describing the command language."""
        return self._templates["system"].template

    def build_discovery_prompt(self, instruction: str, html: str) -> str:
        """Ask for the first command of an open-ended instruction."""
        return self._templates["discovery"].format(
            instruction=instruction, html=self._html(html)
        )

    def build_iteration_prompt(
        self,
        instruction: str,
        html: str,
        previous_commands: list["Command"],
    ) -> str:
        """
        Ask for the next command, or ``COMPLETE``.

        Falls back to the discovery prompt when nothing has been produced yet.
        """
        if not previous_commands:
            return self.build_discovery_prompt(instruction, html)
        history = "\n".join(
            f"{i}. {command.to_dsl()}" for i, command in enumerate(previous_commands, start=1)
        )
        return self._templates["iteration"].format(
            instruction=instruction,
            previous_commands=history,
            html=self._html(html),
        )

    # -------------------------------------------------------------------------
    # PLANNING
    # -------------------------------------------------------------------------

    def build_planning_system_prompt(self) -> str:
        return self._templates["planning_system"].template

    def build_planning_prompt(self, instruction: str, html: str) -> str:
        """Ask for a numbered list of atomic steps."""
        return self._templates["planning"].format(instruction=instruction, html=self._html(html))

    def build_command_generation_prompt(self, step: str, instruction: str, html: str) -> str:
        """Ask for exactly one command for one planned step."""
        return self._templates["command_generation"].format(
            step=step, instruction=instruction, html=self._html(html)
        )

    def build_validation_refinement_prompt(
        self,
        command: "Command",
        issues: list[str],
        html: str,
    ) -> str:
        """Ask for a corrected command after static validation failed."""
        return self._templates["validation_refinement"].format(
            command=command.to_dsl(),
            issues="\n".join(f"- {issue}" for issue in issues) or "- (none reported)",
            html=self._html(html),
        )

    # -------------------------------------------------------------------------
    # SELF-HEALING
    # -------------------------------------------------------------------------

    def build_healing_system_prompt(self) -> str:
        return self._templates["healing_system"].template

    def build_healing_prompt(
        self,
        test_name: str,
        current_content: str,
        failure: "FailureContext",
        previous_attempts: list["FailureContext"] | None = None,
    ) -> str:
        """
        Describe a failed run and ask for a corrected command sequence.

        Args:
            test_name: Name of the test being healed.
            current_content: Command text of the failed attempt.
            failure: Analysis of the latest failure.
            previous_attempts: Earlier failures, oldest first.
        """
        if failure.available_selectors:
            selectors = "\n".join(f"- {s}" for s in failure.available_selectors)
        else:
            selectors = "No selectors captured"

        history = ""
        if previous_attempts:
            lines = ["", "## Previous Attempts (All Failed)"]
            for number, attempt in enumerate(previous_attempts, start=1):
                lines.extend([
                    f"### Attempt {number}",
                    f"- Error: {attempt.error}",
                    f"- Failed command: {attempt.failed_command or 'unknown'}",
                    f"- Category: {attempt.failure_category.value}",
                    "",
                ])
            lines.append("Do not repeat the approaches above.")
            history = "\n".join(lines) + "\n"

        return self._templates["healing"].format(
            test_name=test_name,
            error=failure.error,
            failed_command=failure.failed_command or "unknown",
            command_index=failure.command_index,
            category=failure.failure_category.value,
            page_url=failure.page_url or "unknown",
            current_content=current_content,
            available_selectors=selectors,
            history=history,
        )

    def build_selector_refinement_system_prompt(self) -> str:
        # Stored with doubled braces so it survives str.format.
        return self._templates["selector_refinement_system"].format()

    def build_selector_refinement_prompt(
        self,
        selector: "Selector",
        error: str,
        html: str,
        page_url: str = "",
        action: str = "",
        element_description: str = "",
    ) -> str:
        """Describe a failing selector and every candidate tried so far."""
        tried = [f"Primary: {selector.strategy.value}={selector.value}"]
        for number, fallback in enumerate(selector.fallbacks, start=1):
            tried.append(f"Fallback {number}: {fallback.strategy.value}={fallback.value}")

        return self._templates["selector_refinement"].format(
            action=action or "unknown",
            element_description=element_description or "unknown",
            error=error,
            page_url=page_url or "unknown",
            tried="\n  ".join(tried),
            html=self._html(html),
        )

    # -------------------------------------------------------------------------
    # TEMPLATE MANAGEMENT
    # -------------------------------------------------------------------------

    def build_custom_prompt(self, template_name: str, **kwargs: Any) -> str:
        """
        Build a prompt from a named template.

        Raises:
            KeyError: If template not found.
        """
        if template_name not in self._templates:
            raise KeyError(f"Template '{template_name}' not found")
        return self._templates[template_name].format(**kwargs)

    def register_template(self, template: PromptTemplate) -> None:
        """Register or replace a template."""
        self._templates[template.name] = template
        logger.debug(f"Registered template: {template.name}")

    def list_templates(self) -> list[str]:
        return list(self._templates.keys())

    def get_template(self, name: str) -> PromptTemplate | None:
        return self._templates.get(name)


# =============================================================================
# SINGLETON
# =============================================================================


_builder: PromptBuilder | None = None


def get_prompt_builder() -> PromptBuilder:
    """
    Get the shared PromptBuilder instance.

    Returns:
        PromptBuilder singleton.
    """
    global _builder
    if _builder is None:
        _builder = PromptBuilder()
    return _builder
