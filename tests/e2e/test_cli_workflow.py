"""End-to-end tests for the command-line workflow."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from loguru import logger
from typer.testing import CliRunner


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path: Path, monkeypatch, mock_settings):
    """Keep log files under tmp_path and drop sinks bound to the runner's streams."""
    monkeypatch.setenv("E2E_LOG_DIR", str(tmp_path / "logs"))
    yield
    logger.remove()


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def suite_file(tmp_path: Path) -> Path:
    path = tmp_path / "suite.json"
    path.write_text(
        json.dumps(
            {
                "subtasks": [
                    {"id": "open", "commands": ["navigate url=https://shop.test/login"]},
                    {
                        "id": "email",
                        "commands": ["fill css=#email value=a@b.com"],
                        "dependencies": ["open"],
                    },
                    {
                        "id": "submit",
                        "commands": ["click testid=login-button"],
                        "dependencies": ["email"],
                    },
                ]
            }
        ),
        encoding="utf-8",
    )
    return path


# =============================================================================
# PARSE / GRAPH
# =============================================================================


@pytest.mark.e2e
class TestCLIWorkflow:
    """Tests for the offline CLI commands."""

    def test_version(self, runner) -> None:
        from e2e_agent import __version__
        from e2e_agent.cli.main import app

        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_parse(self, runner, tmp_path: Path) -> None:
        from e2e_agent.cli.main import app

        dsl = tmp_path / "login.ox"
        dsl.write_text("# login\nnavigate url=https://shop.test\nclick testid=login\n")

        result = runner.invoke(app, ["parse", str(dsl)])

        assert result.exit_code == 0
        assert "2 commands" in result.stdout
        assert "navigate" in result.stdout

    def test_parse_malformed(self, runner, tmp_path: Path) -> None:
        from e2e_agent.cli.main import app

        dsl = tmp_path / "bad.ox"
        dsl.write_text("click\n")

        result = runner.invoke(app, ["parse", str(dsl)])

        assert result.exit_code == 1
        assert "Line 1" in result.stdout

    def test_parse_missing_file(self, runner, tmp_path: Path) -> None:
        from e2e_agent.cli.main import app

        result = runner.invoke(app, ["parse", str(tmp_path / "missing.ox")])

        assert result.exit_code == 1

    def test_graph_order(self, runner, suite_file: Path) -> None:
        from e2e_agent.cli.main import app

        result = runner.invoke(app, ["graph", str(suite_file)])

        assert result.exit_code == 0
        assert "Execution Order" in result.stdout
        assert result.stdout.index("open") < result.stdout.index("submit")

    def test_graph_dry_run(
        self, runner, suite_file: Path, tmp_path: Path, login_html: str
    ) -> None:
        from e2e_agent.cli.main import app

        page = tmp_path / "login.html"
        page.write_text(login_html, encoding="utf-8")

        result = runner.invoke(app, ["graph", str(suite_file), "--run", "--html", str(page)])

        assert result.exit_code == 0
        assert "open: completed" in result.stdout
        assert "submit: completed" in result.stdout

    def test_graph_dry_run_failure(
        self, runner, suite_file: Path, tmp_path: Path, products_html: str
    ) -> None:
        from e2e_agent.cli.main import app

        page = tmp_path / "products.html"
        page.write_text(products_html, encoding="utf-8")

        result = runner.invoke(app, ["graph", str(suite_file), "--run", "--html", str(page)])

        assert result.exit_code == 1
        assert "email: failed" in result.stdout
        assert "submit: blocked" in result.stdout

    def test_graph_cycle(self, runner, tmp_path: Path) -> None:
        from e2e_agent.cli.main import app

        path = tmp_path / "cycle.json"
        path.write_text(
            json.dumps(
                {
                    "subtasks": [
                        {"id": "a", "commands": ["navigate url=/"], "dependencies": ["b"]},
                        {"id": "b", "commands": ["navigate url=/"], "dependencies": ["a"]},
                    ]
                }
            )
        )

        result = runner.invoke(app, ["graph", str(path)])

        assert result.exit_code == 1
        assert "Invalid graph file" in result.stdout


# =============================================================================
# MODEL-BACKED COMMANDS
# =============================================================================


@pytest.mark.e2e
class TestCLIModelCommands:
    """Tests for decompose and heal with a scripted gateway."""

    def test_decompose_iterative(
        self, runner, make_gateway, tmp_path: Path, login_html: str
    ) -> None:
        from e2e_agent.cli.main import app
        from e2e_agent.llm.gateway import ModelGateway

        gateway, _ = make_gateway(["fill css=#email value=a@b.com", "COMPLETE"])
        page = tmp_path / "login.html"
        page.write_text(login_html, encoding="utf-8")
        output = tmp_path / "login.ox"

        with patch.object(ModelGateway, "from_settings", return_value=gateway):
            result = runner.invoke(
                app,
                [
                    "decompose",
                    "Enter the email",
                    "--html",
                    str(page),
                    "--iterative",
                    "-o",
                    str(output),
                ],
            )

        assert result.exit_code == 0
        assert output.read_text() == "fill css=#email value=a@b.com\n"

    def test_decompose_failure(self, runner, make_gateway) -> None:
        from e2e_agent.cli.main import app
        from e2e_agent.llm.gateway import ModelGateway

        gateway, _ = make_gateway(["unused"], failures=5, error="overloaded")

        with patch.object(ModelGateway, "from_settings", return_value=gateway):
            result = runner.invoke(app, ["decompose", "Log in"])

        assert result.exit_code == 1
        assert "Decomposition failed" in result.stdout

    def test_heal_and_write(
        self, runner, make_gateway, tmp_path: Path, products_html: str
    ) -> None:
        from e2e_agent.cli.main import app
        from e2e_agent.llm.gateway import ModelGateway

        gateway, _ = make_gateway(["click testid=buy-lamp"])
        page = tmp_path / "products.html"
        page.write_text(products_html, encoding="utf-8")
        dsl = tmp_path / "buy.ox"
        dsl.write_text("click text=Buy\n")

        with patch.object(ModelGateway, "from_settings", return_value=gateway):
            result = runner.invoke(app, ["heal", str(dsl), "--html", str(page), "--write"])

        assert result.exit_code == 0
        assert dsl.read_text() == "click testid=buy-lamp\n"

    def test_heal_gives_up(
        self, runner, make_gateway, tmp_path: Path, products_html: str
    ) -> None:
        from e2e_agent.cli.main import app
        from e2e_agent.llm.gateway import ModelGateway

        gateway, _ = make_gateway(["click text=Buy"])
        page = tmp_path / "products.html"
        page.write_text(products_html, encoding="utf-8")
        dsl = tmp_path / "buy.ox"
        dsl.write_text("click text=Buy\n")

        with patch.object(ModelGateway, "from_settings", return_value=gateway):
            result = runner.invoke(
                app, ["heal", str(dsl), "--html", str(page), "--max-attempts", "2"]
            )

        assert result.exit_code == 1
        assert "still failing after 2 attempts" in result.stdout
        assert dsl.read_text() == "click text=Buy\n"
