"""
Prompt templates for decomposition and self-healing.

This module provides the prompt templates used to plan test steps, generate
and refine DSL commands, and repair failed runs.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# TEMPLATE MODEL
# =============================================================================


class PromptTemplate(BaseModel):
    """A reusable prompt template."""

    model_config = ConfigDict(frozen=True)

    name: str
    template: str
    description: str = ""
    variables: list[str] = Field(default_factory=list)

    def format(self, **kwargs: Any) -> str:
        """Format the template with provided values.

        Args:
            **kwargs: Template variable values.

        Returns:
            Formatted prompt string.
        """
        return self.template.format(**kwargs)

    def get_missing_variables(self, **kwargs: Any) -> list[str]:
        """Get list of variables not provided."""
        return [v for v in self.variables if v not in kwargs]


# =============================================================================
# COMMAND GENERATION
# =============================================================================


SYSTEM_PROMPT = PromptTemplate(
    name="system",
    description="Explains the command language to the model",
    template="""You are an expert E2E test automation assistant. Your task is to generate test commands based on user instructions and HTML context.

Command Syntax:
- navigate url=<URL>
- click <selector>
- fill <selector> value=<text>
- type <selector> value=<text>
- hover <selector>
- keypress key=<key>
- wait timeout=<ms>
- wait_for <selector> timeout=<ms>
- assert_exists <selector>
- assert_not_exists <selector>
- assert_visible <selector>
- assert_text <selector> value=<expected>
- assert_value <selector> value=<expected>
- assert_url pattern=<regex>

Selector Strategies:
- css=<selector> (e.g., css=button.submit)
- xpath=<xpath> (e.g., xpath=//button[@type='submit'])
- text="<text>" (e.g., text="Login")
- placeholder="<text>" (e.g., placeholder="Enter email")
- label="<text>" (e.g., label="Email")
- role=<role> (e.g., role=button)
- testid=<id> (e.g., testid=submit-btn)

Fallback Selectors:
- click text="Login" fallback=css=button[type="submit"]

Rules:
1. Generate ONE command per response
2. Use the most reliable selector strategy based on the HTML
3. Prefer semantic selectors (text, role, testid) over CSS
4. Include fallback selectors for important actions
5. When the task is complete, respond with "COMPLETE"
6. Only generate commands for the current step, not future steps

Return ONLY the command, nothing else. No explanations, no markdown, no code blocks.""",
)

DISCOVERY_PROMPT = PromptTemplate(
    name="discovery",
    description="First command for an open-ended instruction",
    variables=["instruction", "html"],
    template="""Task: {instruction}

Current Page HTML:
{html}

Generate the FIRST command to begin this task. Return only the command, nothing else.""",
)

ITERATION_PROMPT = PromptTemplate(
    name="iteration",
    description="Next command given the commands produced so far",
    variables=["instruction", "previous_commands", "html"],
    template="""Task: {instruction}

Previous commands executed:
{previous_commands}

Current Page HTML:
{html}

Generate the NEXT command to continue this task. If the task is complete, respond with "COMPLETE". Return only the command or "COMPLETE", nothing else.""",
)


# =============================================================================
# PLANNING
# =============================================================================


PLANNING_SYSTEM_PROMPT = PromptTemplate(
    name="planning_system",
    description="Instructs the model to produce an atomic step list",
    template="""You are an expert test automation planner. Your job is to break down high-level test instructions into atomic, sequential steps.

GUIDELINES:
- Each step should be a single, clear action or verification
- Steps should be in logical order
- Be specific about what to click, fill, or verify
- Include wait steps where page transitions occur
- Include verification steps to confirm success
- Keep steps focused and atomic, one action per step

OUTPUT FORMAT:
Return a numbered list of steps, one per line:
1. First step description
2. Second step description
3. Third step description

Do not include code, selectors, or technical details. Only describe what needs to happen.
Do not add explanations or commentary. Only the numbered list.""",
)

PLANNING_PROMPT = PromptTemplate(
    name="planning",
    description="Instruction plus page snapshot for the planning pass",
    variables=["instruction", "html"],
    template="""Break down this test instruction into atomic steps:

INSTRUCTION: {instruction}

CURRENT PAGE HTML:
{html}

Analyze the HTML and the instruction. Create a step-by-step plan that accomplishes the instruction.

Return ONLY a numbered list of steps (1., 2., 3., etc.), nothing else.""",
)

COMMAND_GENERATION_PROMPT = PromptTemplate(
    name="command_generation",
    description="One command for one planned step",
    variables=["step", "instruction", "html"],
    template="""Generate ONE command for this specific step:

STEP: {step}

ORIGINAL INSTRUCTION: {instruction}

CURRENT PAGE HTML:
{html}

Analyze the HTML and generate the single most appropriate command for this step.
Use semantic selectors (text, role, testid) when possible.
Include fallback selectors for important actions.

Return ONLY the command, nothing else. No explanations, no markdown, no code blocks.""",
)

VALIDATION_REFINEMENT_PROMPT = PromptTemplate(
    name="validation_refinement",
    description="Correct a generated command that failed static validation",
    variables=["command", "issues", "html"],
    template="""REFINE the following command that failed validation:

ORIGINAL COMMAND: {command}

VALIDATION ISSUES:
{issues}

CURRENT PAGE HTML:
{html}

Analyze the validation issues and HTML, then generate a CORRECTED command that addresses all issues.
Use the most reliable selector that exists in the HTML.

Return ONLY the corrected command, nothing else. No explanations, no markdown, no code blocks.""",
)


# =============================================================================
# SELF-HEALING
# =============================================================================


HEALING_SYSTEM_PROMPT = PromptTemplate(
    name="healing_system",
    description="Role prompt for repairing a failed command sequence",
    template="""You are an expert test automation engineer specializing in fixing failed tests.

Your role is to analyze test failures and generate improved test commands that will pass.

Command Format:
- navigate url=<url>
- click css=<selector> fallback=text="<text>"
- fill css=<selector> value=<value>
- wait timeout=<ms>
- assert_visible css=<selector>
- assert_text css=<selector> value=<expected>

Key principles:
- Always use specific, reliable selectors
- Prefer data-testid > id > semantic selectors > class names
- Use fallback selectors for robustness
- Add waits when elements might not be immediately available
- Keep tests simple and focused

Generate valid commands only, one per line.""",
)

HEALING_PROMPT = PromptTemplate(
    name="healing",
    description="Failure report asking for a corrected command sequence",
    variables=[
        "test_name",
        "error",
        "failed_command",
        "command_index",
        "category",
        "page_url",
        "current_content",
        "available_selectors",
        "history",
    ],
    template="""# Test Refinement Request

## Test Name
{test_name}

## Execution Failure
- Error: {error}
- Failed command (step {command_index}): {failed_command}
- Failure category: {category}
- Page URL: {page_url}

## Current Commands
{current_content}

## Page Analysis
The following selectors are available on the page:
{available_selectors}
{history}
## Task
Generate an improved command sequence that fixes the failure.

1. Use selectors that actually exist on the page (see available selectors above)
2. Add fallback selectors for reliability
3. Consider adding wait commands if timing might be an issue
4. For SELECTOR_NOT_FOUND errors, try alternative selector strategies
5. For TIMEOUT errors, increase timeout or add explicit waits

Output ONLY the commands, no explanation or markdown.""",
)

SELECTOR_REFINEMENT_SYSTEM_PROMPT = PromptTemplate(
    name="selector_refinement_system",
    description="Role prompt for replacing one failing selector",
    template="""You are an expert at analyzing HTML and creating robust CSS selectors and XPath expressions.

Your task is to analyze failed selectors and suggest better alternatives based on the current page HTML.

Key principles:
1. Prefer semantic selectors (data-testid, aria-label, role) over structural CSS
2. Avoid fragile selectors (nth-child, complex class chains)
3. Use text content matching when appropriate
4. Always provide fallback strategies
5. Consider that the page might be dynamic

Response format (JSON only, no markdown):
{{
  "primary": {{
    "strategy": "css|xpath|text|role|testid|placeholder|label",
    "value": "selector-value"
  }},
  "fallbacks": [
    {{
      "strategy": "css|xpath|text|role|testid|placeholder|label",
      "value": "selector-value"
    }}
  ],
  "confidence": 0.0-1.0,
  "reasoning": "Brief explanation of why this selector should work"
}}""",
)

SELECTOR_REFINEMENT_PROMPT = PromptTemplate(
    name="selector_refinement",
    description="Failed selector plus page snapshot",
    variables=["action", "element_description", "error", "page_url", "tried", "html"],
    template="""## Failed Selector Analysis

**Action**: {action}
**Element**: {element_description}
**Error**: {error}
**Page URL**: {page_url}

**Tried selectors**:
  {tried}

**Current page HTML**:
```html
{html}
```

Analyze the HTML and suggest a better selector that will reliably find the element for this action.

Return ONLY valid JSON (no markdown, no code blocks):""",
)
