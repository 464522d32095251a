"""
Failure analysis for self-healing.

Classifies an execution error into a coarse category and collects the
selectors present on the page at failure time, so the correction prompt can
point the model at elements that actually exist.
"""

import re
from datetime import datetime
from enum import Enum

from bs4 import BeautifulSoup
from loguru import logger
from pydantic import BaseModel, Field

from e2e_agent.core.page import PageContextProvider
from e2e_agent.dsl.models import Subtask

# Generated utility classes such as "p4" or "x1" identify nothing.
_UTILITY_CLASS = re.compile(r"^[a-z]\d+$")


class FailureCategory(str, Enum):
    """Coarse failure classes used to steer the correction prompt."""

    SELECTOR_NOT_FOUND = "SELECTOR_NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    ASSERTION_MISMATCH = "ASSERTION_MISMATCH"
    NAVIGATION_ERROR = "NAVIGATION_ERROR"
    UNKNOWN = "UNKNOWN"


class FailureContext(BaseModel):
    """Everything known about one failed attempt."""

    error: str
    failed_command: str | None = None
    command_index: int = 0
    page_url: str | None = None
    available_selectors: list[str] = Field(default_factory=list)
    failure_category: FailureCategory = FailureCategory.UNKNOWN
    timestamp: datetime = Field(default_factory=datetime.now)
    page_html: str | None = Field(default=None, repr=False)


class FailureAnalyzer:
    """
    Build a :class:`FailureContext` from a failed subtask.

    Example:
        >>> analyzer = FailureAnalyzer()
        >>> analyzer.categorize_failure("Element not found: #submit")
        <FailureCategory.SELECTOR_NOT_FOUND: 'SELECTOR_NOT_FOUND'>
    """

    def __init__(self, max_selectors: int = 50) -> None:
        self.max_selectors = max_selectors

    def categorize_failure(self, error: str) -> FailureCategory:
        """Classify an error message."""
        text = error.lower()
        if "element not found" in text or "selector" in text:
            return FailureCategory.SELECTOR_NOT_FOUND
        if "timeout" in text or "exceeded" in text:
            return FailureCategory.TIMEOUT
        if "expected" in text and "got" in text:
            return FailureCategory.ASSERTION_MISMATCH
        if "err_name_not_resolved" in text or "navigation" in text:
            return FailureCategory.NAVIGATION_ERROR
        return FailureCategory.UNKNOWN

    def extract_selectors(self, html: str, max_selectors: int | None = None) -> list[str]:
        """
        Selectors for identifiable elements in ``html``.

        Ordered by reliability: data-testid, aria-label, id, then class.
        Duplicates and utility classes are skipped.
        """
        limit = max_selectors if max_selectors is not None else self.max_selectors
        soup = BeautifulSoup(html, "html.parser")

        testids: list[str] = []
        arias: list[str] = []
        ids: list[str] = []
        classes: list[str] = []

        for element in soup.find_all(True):
            testid = element.get("data-testid")
            if testid:
                testids.append(f'[data-testid="{testid}"]')
            aria = element.get("aria-label")
            if aria:
                arias.append(f'[aria-label="{aria}"]')
            element_id = element.get("id")
            if element_id:
                ids.append(f"#{element_id}")
            for cls in element.get("class") or []:
                if len(cls) <= 2 or _UTILITY_CLASS.match(cls):
                    continue
                classes.append(f".{cls}")

        ordered = list(dict.fromkeys(testids + arias + ids + classes))
        return ordered[:limit]

    async def analyze_failure(
        self,
        subtask: Subtask,
        page: PageContextProvider | None = None,
    ) -> FailureContext:
        """
        Analyze a failed subtask.

        Page capture is best-effort: a provider error leaves the URL and
        selectors empty rather than masking the original failure.
        """
        result = subtask.result
        error = (result.error if result else None) or "Unknown error"
        index = 0
        if result is not None and result.failed_command_index is not None:
            index = result.failed_command_index

        failed_command = None
        if 0 <= index < len(subtask.commands):
            failed_command = subtask.commands[index].to_dsl()

        page_url = None
        page_html = None
        selectors: list[str] = []
        if page is not None:
            try:
                page_url = await page.get_url()
                page_html = await page.get_html()
                selectors = self.extract_selectors(page_html)
            except Exception as e:
                logger.warning(f"Could not capture page state after failure: {e}")

        category = self.categorize_failure(error)
        logger.info(f"Failure in {subtask.id} at command {index}: {category.value}")
        return FailureContext(
            error=error,
            failed_command=failed_command,
            command_index=index,
            page_url=page_url,
            available_selectors=selectors,
            failure_category=category,
            page_html=page_html,
        )
