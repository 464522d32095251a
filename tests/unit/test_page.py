"""Unit tests for page-context helpers."""

import pytest

from e2e_agent.core.page import (
    TRUNCATION_MARKER,
    PageContextProvider,
    StaticPageContext,
    simplify_html,
    truncate_html,
)


class TestSimplifyHtml:
    """Tests for simplify_html."""

    def test_removes_scripts_styles_comments(self, login_html):
        html = login_html.replace("<form", "<!-- tracking --><style>.x{}</style><form")

        simplified = simplify_html(html)

        assert "<script" not in simplified
        assert "<style" not in simplified
        assert "tracking" not in simplified
        assert simplified.startswith("<body>")
        assert 'data-testid="login-button"' in simplified

    def test_strips_inline_styles(self):
        html = '<body><div style="color: red" id="x">Hi</div></body>'

        assert simplify_html(html) == '<body><div id="x">Hi</div></body>'
        assert 'style="color: red"' in simplify_html(html, strip_inline_styles=False)

    def test_fragment_without_body(self):
        assert simplify_html('<button id="go">Go</button>') == '<button id="go">Go</button>'


class TestTruncateHtml:
    """Tests for truncate_html."""

    def test_short_html_untouched(self):
        assert truncate_html("<p>hi</p>", 100) == "<p>hi</p>"

    def test_truncated_with_marker(self):
        result = truncate_html("a" * 50, 10)

        assert result == "a" * 10 + TRUNCATION_MARKER


class TestStaticPageContext:
    """Tests for StaticPageContext."""

    @pytest.mark.asyncio
    async def test_snapshot(self, static_page):
        snapshot = await static_page.get_snapshot()

        assert "window.track" not in snapshot
        assert await static_page.get_url() == "https://shop.test/login"

    @pytest.mark.asyncio
    async def test_snapshot_budget(self, static_page):
        snapshot = await static_page.get_snapshot(max_chars=40)

        assert snapshot.endswith(TRUNCATION_MARKER)
        assert len(snapshot) == 40 + len(TRUNCATION_MARKER)

    @pytest.mark.asyncio
    async def test_set_html_and_url(self):
        page = StaticPageContext()

        page.set_html("<body><h1>Done</h1></body>")
        page.set_url("https://shop.test/done")

        assert await page.get_snapshot() == "<body><h1>Done</h1></body>"
        assert await page.get_url() == "https://shop.test/done"

    def test_is_provider(self, static_page):
        assert isinstance(static_page, PageContextProvider)
