"""Unit tests for prompt templates and the prompt builder."""

import pytest

from e2e_agent.core.page import TRUNCATION_MARKER
from e2e_agent.dsl.models import Command, FallbackSelector, Selector
from e2e_agent.healing.failure_analyzer import FailureCategory, FailureContext
from e2e_agent.prompts.builder import PromptBuilder, get_prompt_builder
from e2e_agent.prompts.templates import PLANNING_PROMPT, PromptTemplate


@pytest.fixture
def builder():
    return PromptBuilder(html_budget=200)


@pytest.fixture
def failure():
    return FailureContext(
        error='Text selector "Buy" matches multiple elements (3 found)',
        failed_command='click text=Buy',
        command_index=1,
        page_url="https://shop.test/products",
        available_selectors=['[data-testid="buy-lamp"]', '[data-testid="buy-desk"]'],
        failure_category=FailureCategory.SELECTOR_NOT_FOUND,
    )


class TestPromptTemplate:
    """Tests for PromptTemplate."""

    def test_format(self):
        template = PromptTemplate(name="t", template="Hello {name}", variables=["name"])

        assert template.format(name="world") == "Hello world"

    def test_missing_variables(self):
        assert PLANNING_PROMPT.get_missing_variables(instruction="x") == ["html"]


class TestPromptBuilder:
    """Tests for PromptBuilder."""

    def test_planning_prompt(self, builder):
        prompt = builder.build_planning_prompt("Log in as admin", "<button>Go</button>")

        assert "INSTRUCTION: Log in as admin" in prompt
        assert "<button>Go</button>" in prompt
        assert "numbered list" in prompt

    def test_html_is_truncated(self, builder):
        """Test that markup longer than the budget is cut with a marker."""
        prompt = builder.build_command_generation_prompt("Click", "Log in", "x" * 1000)

        assert "x" * 200 + TRUNCATION_MARKER in prompt
        assert "x" * 201 not in prompt

    def test_command_generation_prompt(self, builder):
        prompt = builder.build_command_generation_prompt(
            step="Click the login button",
            instruction="Log in as admin",
            html="<button>Login</button>",
        )

        assert "STEP: Click the login button" in prompt
        assert "ORIGINAL INSTRUCTION: Log in as admin" in prompt

    def test_validation_refinement_prompt(self, builder):
        command = Command(type="click", selector=Selector(strategy="css", value="button"))

        prompt = builder.build_validation_refinement_prompt(
            command, ["Selector button matches multiple elements (3 found)"], "<button/>"
        )

        assert "ORIGINAL COMMAND: click css=button" in prompt
        assert "- Selector button matches multiple elements (3 found)" in prompt

    def test_iteration_prompt_falls_back_to_discovery(self, builder):
        first = builder.build_iteration_prompt("Search for lamps", "<input>", [])

        assert "Previous commands executed" not in first
        assert first == builder.build_discovery_prompt("Search for lamps", "<input>")

    def test_iteration_prompt_lists_history(self, builder):
        commands = [
            Command(type="navigate", params={"url": "https://shop.test"}),
            Command(type="click", selector=Selector(strategy="testid", value="search")),
        ]

        prompt = builder.build_iteration_prompt("Search for lamps", "<input>", commands)

        assert "1. navigate url=https://shop.test" in prompt
        assert "2. click testid=search" in prompt
        assert "COMPLETE" in prompt

    def test_healing_prompt(self, builder, failure):
        prompt = builder.build_healing_prompt("checkout", "click text=Buy", failure)

        assert "## Test Name\ncheckout" in prompt
        assert "Failure category: SELECTOR_NOT_FOUND" in prompt
        assert '- [data-testid="buy-lamp"]' in prompt
        assert "Previous Attempts" not in prompt

    def test_healing_prompt_with_history(self, builder, failure):
        earlier = failure.model_copy(update={"error": "Element not found: #buy"})

        prompt = builder.build_healing_prompt("checkout", "click text=Buy", failure, [earlier])

        assert "## Previous Attempts (All Failed)" in prompt
        assert "### Attempt 1" in prompt
        assert "- Error: Element not found: #buy" in prompt

    def test_healing_prompt_without_selectors(self, builder):
        failure = FailureContext(error="Timeout 5000ms exceeded")

        prompt = builder.build_healing_prompt("search", "click css=#go", failure)

        assert "No selectors captured" in prompt
        assert "Page URL: unknown" in prompt

    def test_selector_refinement_prompts(self, builder):
        selector = Selector(
            strategy="css",
            value=".buy",
            fallbacks=(FallbackSelector(strategy="text", value="Buy"),),
        )

        prompt = builder.build_selector_refinement_prompt(
            selector, "Element not found", "<button>Buy</button>", action="click"
        )
        system = builder.build_selector_refinement_system_prompt()

        assert "Primary: css=.buy" in prompt
        assert "Fallback 1: text=Buy" in prompt
        assert "**Action**: click" in prompt
        assert '"primary": {' in system

    def test_builtin_templates(self, builder):
        """Test that only templates backing a build method are registered."""
        assert builder.list_templates() == [
            "system",
            "discovery",
            "iteration",
            "planning_system",
            "planning",
            "command_generation",
            "validation_refinement",
            "healing_system",
            "healing",
            "selector_refinement_system",
            "selector_refinement",
        ]

    def test_custom_templates(self, builder):
        builder.register_template(PromptTemplate(name="greeting", template="Hi {who}"))

        assert "greeting" in builder.list_templates()
        assert builder.build_custom_prompt("greeting", who="tester") == "Hi tester"
        assert builder.get_template("missing") is None
        with pytest.raises(KeyError):
            builder.build_custom_prompt("missing")

    def test_shared_builder(self):
        assert get_prompt_builder() is get_prompt_builder()
