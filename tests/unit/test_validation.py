"""Unit tests for CommandValidator."""

import pytest

from e2e_agent.decomposition.validation import CommandValidator
from e2e_agent.dsl.models import Command, Selector


def click(strategy: str, value: str) -> Command:
    return Command(type="click", selector=Selector(strategy=strategy, value=value))


@pytest.fixture
def validator():
    return CommandValidator()


class TestCommandValidator:
    """Tests for CommandValidator."""

    def test_no_selector_is_valid(self, validator, login_html):
        command = Command(type="navigate", params={"url": "https://shop.test"})

        assert validator.validate(command, login_html).valid

    def test_empty_snapshot_is_valid(self, validator):
        report = validator.validate(click("css", "#anything"), "   ")

        assert report.valid
        assert report.match_count is None

    def test_unique_css(self, validator, login_html):
        report = validator.validate(click("css", "#email"), login_html)

        assert report.valid
        assert report.match_count == 1

    def test_css_not_found(self, validator, login_html):
        report = validator.validate(click("css", "#missing"), login_html)

        assert not report.valid
        assert report.issues == ["Selector #missing not found in HTML"]

    def test_bare_tag_is_too_generic(self, validator, products_html):
        """Test that a bare tag name is flagged even before counting."""
        report = validator.validate(click("css", "button"), products_html)

        assert not report.valid
        assert report.issues[0].startswith("Selector button is too generic")
        assert report.issues[1] == "Selector button matches multiple elements (3 found)"

    def test_ambiguous_text(self, validator, products_html):
        report = validator.validate(click("text", "Buy"), products_html)

        assert not report.valid
        assert report.match_count == 3
        assert report.issues == ['Text selector "Buy" matches multiple elements (3 found)']

    def test_text_not_found(self, validator, login_html):
        report = validator.validate(click("text", "Register"), login_html)

        assert report.issues == ['Text selector "Register" not found in HTML']

    def test_unique_text(self, validator, login_html):
        assert validator.validate(click("text", "Sign in"), login_html).valid

    def test_testid(self, validator, products_html):
        assert validator.validate(click("testid", "buy-desk"), products_html).valid
        assert not validator.validate(click("testid", "buy-sofa"), products_html).valid

    def test_placeholder(self, validator, login_html):
        assert validator.validate(click("placeholder", "you@example.com"), login_html).valid

    def test_label_and_aria_label(self, validator, login_html):
        assert validator.validate(click("label", "Password"), login_html).valid
        assert validator.validate(click("label", "Forgot password"), login_html).valid

    def test_implicit_role(self, validator, login_html):
        report = validator.validate(click("role", "button"), login_html)

        assert report.valid
        assert report.match_count == 1

    def test_role_with_name_filter_is_not_counted(self, validator, products_html):
        report = validator.validate(click("role", 'button[name="Buy"]'), products_html)

        assert report.valid
        assert report.match_count is None

    def test_xpath_is_not_counted(self, validator, login_html):
        report = validator.validate(click("xpath", "//button"), login_html)

        assert report.valid
        assert report.match_count is None

    def test_unparseable_css_is_not_counted(self, validator, login_html):
        report = validator.validate(click("css", "button:has-text('Sign in')"), login_html)

        assert report.valid
        assert report.match_count is None
