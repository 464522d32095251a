"""Pytest configuration and shared fixtures."""

import os
from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-REDACTED")
os.environ.setdefault("E2E_DEBUG", "true")
os.environ.setdefault("E2E_LOG_LEVEL", "DEBUG")
os.environ.setdefault("E2E_CACHE_ENABLED", "false")


@pytest.fixture
def mock_settings() -> Generator:
    """Clear cached settings around a test."""
    from e2e_agent.core.config import clear_settings_cache

    clear_settings_cache()

    yield

    clear_settings_cache()


@pytest.fixture
def login_html() -> str:
    """A small login page."""
    return """<html>
<head><title>Login</title><script>window.track = true;</script></head>
<body>
  <form id="login-form">
    <label for="email">Email</label>
    <input id="email" type="email" placeholder="you@example.com">
    <label for="password">Password</label>
    <input id="password" type="password" data-testid="password-input">
    <button type="submit" data-testid="login-button" class="btn btn-primary">Sign in</button>
  </form>
  <a href="/forgot" aria-label="Forgot password">Forgot?</a>
</body>
</html>"""


@pytest.fixture
def products_html() -> str:
    """A page with three identical Buy buttons."""
    return """<html><body>
  <h1>Products</h1>
  <div class="product"><span>Lamp</span><button data-testid="buy-lamp">Buy</button></div>
  <div class="product"><span>Desk</span><button data-testid="buy-desk">Buy</button></div>
  <div class="product"><span>Chair</span><button data-testid="buy-chair">Buy</button></div>
</body></html>"""


@pytest.fixture
def static_page(login_html):
    """Page context serving the login page."""
    from e2e_agent.core.page import StaticPageContext

    return StaticPageContext(login_html, url="https://shop.test/login")


@pytest.fixture
def make_gateway():
    """Factory for a gateway over a scripted backend with no backoff."""
    from e2e_agent.core.retry import RetryPolicy
    from e2e_agent.llm.backends import StaticBackend
    from e2e_agent.llm.gateway import ModelGateway

    def _make(responses, **backend_kwargs):
        backend = StaticBackend(responses, **backend_kwargs)
        gateway = ModelGateway()
        gateway.add_provider(
            backend,
            name="static",
            retry_policy=RetryPolicy.no_backoff(1),
            timeout_ms=5000,
        )
        return gateway, backend

    return _make


@pytest.fixture
def mock_executor() -> MagicMock:
    """Executor whose every command succeeds."""
    from e2e_agent.dsl.models import ExecutionResult

    executor = MagicMock()
    executor.execute = AsyncMock(return_value=ExecutionResult(success=True))
    return executor


# Markers
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "e2e: mark test as end-to-end test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
