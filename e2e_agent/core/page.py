"""Page-context providers - simplified page snapshots for prompts.

The browser driver lives outside this package; it plugs in by implementing
:class:`PageContextProvider`. :class:`StaticPageContext` serves a fixed HTML
string for offline runs, the CLI, and tests.
"""

from abc import ABC, abstractmethod

from bs4 import BeautifulSoup, Comment
from loguru import logger

TRUNCATION_MARKER = "\n\n<!-- [HTML truncated for brevity] -->"


def simplify_html(html: str, strip_inline_styles: bool = True) -> str:
    """
    Strip scripts, styles, comments, and inline styling from markup.

    Args:
        html: Raw page markup.
        strip_inline_styles: Also drop ``style`` attributes.

    Returns:
        The simplified ``<body>`` markup, or the whole document if it has no body.
    """
    soup = BeautifulSoup(html, "html.parser")

    for element in soup.find_all(["script", "style", "noscript"]):
        element.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()
    if strip_inline_styles:
        for element in soup.find_all(style=True):
            del element["style"]

    root = soup.body or soup
    return str(root).strip()


def truncate_html(html: str, max_length: int) -> str:
    """Cut ``html`` to ``max_length`` characters, appending a marker if cut."""
    if len(html) <= max_length:
        return html
    return html[:max_length] + TRUNCATION_MARKER


class PageContextProvider(ABC):
    """Source of the current page's markup and URL."""

    @abstractmethod
    async def get_html(self) -> str:
        """Full current page markup."""

    @abstractmethod
    async def get_url(self) -> str:
        """Current page URL."""

    async def get_snapshot(self, max_chars: int | None = None) -> str:
        """Simplified markup, truncated to ``max_chars`` when given."""
        simplified = simplify_html(await self.get_html())
        if max_chars is not None:
            simplified = truncate_html(simplified, max_chars)
        return simplified


class StaticPageContext(PageContextProvider):
    """
    Serves a fixed HTML document.

    Example:
        >>> page = StaticPageContext('<button id="go">Go</button>', url="https://shop.test")
        >>> await page.get_snapshot()
        '<button id="go">Go</button>'
    """

    def __init__(self, html: str = "<html><body></body></html>", url: str = "about:blank") -> None:
        self._html = html
        self._url = url

    def set_html(self, html: str) -> None:
        self._html = html
        logger.debug(f"Page snapshot replaced ({len(html)} chars)")

    def set_url(self, url: str) -> None:
        self._url = url

    async def get_html(self) -> str:
        return self._html

    async def get_url(self) -> str:
        return self._url
