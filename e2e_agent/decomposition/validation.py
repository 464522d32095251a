"""
Static command validation against a page snapshot.

Before a generated command is accepted, its primary selector is matched
against the current markup with BeautifulSoup. Selectors that are too
generic, match nothing, or match more than one element are reported so the
decomposition engine can ask the model for a correction.

Matching is best-effort: the snapshot is static HTML, so XPath selectors
and CSS the soupsieve engine cannot parse are accepted without a count.
"""

import re

import soupsieve
from bs4 import BeautifulSoup, Tag
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from e2e_agent.dsl.models import Command, Selector, SelectorStrategy

BARE_TAG_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]*$")

# Tags that carry an ARIA role without an explicit role attribute.
IMPLICIT_ROLES: dict[str, list[str]] = {
    "button": ["button", 'input[type="button"]', 'input[type="submit"]'],
    "link": ["a[href]"],
    "textbox": ['input:not([type])', 'input[type="text"]', 'input[type="email"]', "textarea"],
    "checkbox": ['input[type="checkbox"]'],
    "radio": ['input[type="radio"]'],
    "combobox": ["select"],
    "heading": ["h1", "h2", "h3", "h4", "h5", "h6"],
    "list": ["ul", "ol"],
    "listitem": ["li"],
    "img": ["img[alt]"],
    "navigation": ["nav"],
    "form": ["form"],
}


class ValidationReport(BaseModel):
    """Outcome of validating one command against a snapshot."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    issues: list[str] = Field(default_factory=list)
    match_count: int | None = Field(
        default=None,
        description="Elements matched by the primary selector, when countable",
    )


class CommandValidator:
    """
    Check a command's selector against page markup.

    Example:
        >>> validator = CommandValidator()
        >>> cmd = Command(type="click", selector=Selector(strategy="css", value=".btn"))
        >>> report = validator.validate(cmd, '<a class="btn">A</a><a class="btn">B</a>')
        >>> report.issues
        ['Selector .btn matches multiple elements (2 found)']
    """

    def validate(self, command: Command, html: str) -> ValidationReport:
        """
        Validate ``command`` against ``html``.

        Commands without a selector are always valid. An empty snapshot
        cannot be checked, so it is treated as valid as well.
        """
        if command.selector is None:
            return ValidationReport(valid=True)
        if not html or not html.strip():
            logger.debug(f"No page snapshot to validate {command.type.value} against")
            return ValidationReport(valid=True)

        soup = BeautifulSoup(html, "html.parser")
        selector = command.selector
        issues: list[str] = []

        if selector.strategy == SelectorStrategy.CSS and BARE_TAG_PATTERN.match(selector.value):
            issues.append(
                f"Selector {selector.value} is too generic (bare tag name); "
                f"use an id, data-testid, or text selector"
            )

        count = self.count_matches(selector, soup)
        if count is not None:
            issues.extend(self._count_issues(selector, count))

        return ValidationReport(valid=not issues, issues=issues, match_count=count)

    def count_matches(self, selector: Selector, soup: BeautifulSoup) -> int | None:
        """Number of elements the selector matches, or ``None`` when unknown."""
        strategy = selector.strategy
        value = selector.value

        if strategy == SelectorStrategy.CSS:
            return self._count_css(soup, value)
        if strategy == SelectorStrategy.TEXT:
            return len(self._text_matches(soup, value))
        if strategy == SelectorStrategy.TESTID:
            return len(soup.find_all(attrs={"data-testid": value}))
        if strategy == SelectorStrategy.PLACEHOLDER:
            return len(soup.find_all(attrs={"placeholder": value}))
        if strategy == SelectorStrategy.LABEL:
            labels = [
                label for label in soup.find_all("label")
                if value.lower() in label.get_text(" ", strip=True).lower()
            ]
            return len(labels) + len(soup.find_all(attrs={"aria-label": value}))
        if strategy == SelectorStrategy.ROLE:
            return self._count_role(soup, value)
        return None

    # -------------------------------------------------------------------------
    # MATCHERS
    # -------------------------------------------------------------------------

    @staticmethod
    def _count_css(soup: BeautifulSoup, value: str) -> int | None:
        try:
            return len(soup.select(value))
        except (soupsieve.SelectorSyntaxError, NotImplementedError, ValueError) as e:
            logger.debug(f"Cannot statically match CSS {value!r}: {e}")
            return None

    @staticmethod
    def _text_matches(soup: BeautifulSoup, value: str) -> list[Tag]:
        """Distinct elements whose own text contains ``value``."""
        parents: list[Tag] = []
        seen: set[int] = set()
        for string in soup.find_all(string=True):
            if value not in string:
                continue
            parent = string.parent
            if parent is None or parent.name in ("script", "style", "[document]"):
                continue
            if id(parent) not in seen:
                seen.add(id(parent))
                parents.append(parent)
        return parents

    @staticmethod
    def _count_role(soup: BeautifulSoup, value: str) -> int | None:
        role = value.split("[", 1)[0].strip()
        if "[" in value:
            # Accessible-name filters need a rendered page.
            return None
        matched = {id(el): el for el in soup.find_all(attrs={"role": role})}
        for css in IMPLICIT_ROLES.get(role, []):
            for el in soup.select(css):
                if not el.get("role"):
                    matched[id(el)] = el
        return len(matched)

    @staticmethod
    def _count_issues(selector: Selector, count: int) -> list[str]:
        if selector.strategy == SelectorStrategy.TEXT:
            if count == 0:
                return [f'Text selector "{selector.value}" not found in HTML']
            if count > 1:
                return [
                    f'Text selector "{selector.value}" matches multiple elements '
                    f"({count} found)"
                ]
            return []

        if count == 0:
            return [f"Selector {selector.value} not found in HTML"]
        if count > 1:
            return [f"Selector {selector.value} matches multiple elements ({count} found)"]
        return []
