"""Main CLI entry point using Typer."""

import json
from pathlib import Path

import anyio
import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from e2e_agent import __version__
from e2e_agent.core.config import get_settings
from e2e_agent.core.exceptions import E2EAgentError
from e2e_agent.core.logging import configure_logging
from e2e_agent.core.page import StaticPageContext
from e2e_agent.dsl.models import Command, Subtask
from e2e_agent.dsl.parser import DSLParser, serialize_commands

app = typer.Typer(
    name="e2e-agent",
    help="E2E Agent - turn plain-language test instructions into browser test commands",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]E2E Agent[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        "-d",
        help="Log at DEBUG level on the console.",
    ),
) -> None:
    """
    E2E Agent - decompose, validate, and self-heal end-to-end tests.
    """
    settings = get_settings()
    if debug:
        settings = settings.model_copy(update={"e2e_debug": True})
    configure_logging(settings)


def _commands_table(commands: list[Command], title: str) -> Table:
    table = Table(title=title)
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Type", style="bold")
    table.add_column("Selector")
    table.add_column("Params", style="dim")

    for index, command in enumerate(commands, start=1):
        params = ", ".join(f"{k}={v}" for k, v in command.params.items()) or "-"
        table.add_row(
            str(index),
            command.type.value,
            command.selector.to_dsl() if command.selector else "-",
            params,
        )
    return table


def _load_page(html: Path | None, url: str) -> StaticPageContext:
    if html is None:
        return StaticPageContext(url=url)
    if not html.is_file():
        console.print(f"[bold red]HTML file not found: {html}[/bold red]")
        raise typer.Exit(code=1)
    return StaticPageContext(html.read_text(encoding="utf-8"), url=url)


@app.command()
def parse(
    file: Path = typer.Argument(..., help="DSL file to parse"),
) -> None:
    """
    Parse a DSL file and show its commands.

    Example:
        e2e-agent parse tests/login.ox
    """
    try:
        commands = DSLParser().parse_file(file)
    except (FileNotFoundError, E2EAgentError) as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=1) from e

    console.print(_commands_table(commands, f"{file.name} ({len(commands)} commands)"))


@app.command()
def graph(
    file: Path = typer.Argument(..., help="JSON file describing subtasks"),
    run: bool = typer.Option(
        False,
        "--run",
        help="Dry-run the graph against an HTML snapshot",
    ),
    html: Path | None = typer.Option(
        None,
        "--html",
        help="HTML snapshot used by --run",
    ),
) -> None:
    """
    Show the execution order of a subtask graph.

    The file holds ``{"subtasks": [{"id", "description", "commands",
    "dependencies"}]}`` where ``commands`` is a list of DSL lines.

    Example:
        e2e-agent graph suite.json --run --html page.html
    """
    from e2e_agent.decomposition.task_decomposer import TaskDecomposer
    from e2e_agent.execution.executor import StaticPageExecutor, create_graph_executor

    try:
        data = json.loads(file.read_text(encoding="utf-8"))
        parser = DSLParser()
        subtasks = [
            Subtask(
                id=entry["id"],
                description=entry.get("description") or entry["id"],
                commands=parser.parse_content("\n".join(entry["commands"])),
                dependencies=set(entry.get("dependencies", [])),
            )
            for entry in data["subtasks"]
        ]
        dag = TaskDecomposer.build_graph(subtasks)
    except (OSError, KeyError, ValueError, E2EAgentError) as e:
        console.print(f"[bold red]Invalid graph file: {e}[/bold red]")
        raise typer.Exit(code=1) from e

    table = Table(title="Execution Order")
    table.add_column("Wave", style="cyan")
    table.add_column("Subtask", style="bold")
    table.add_column("Depends On")
    table.add_column("Commands", justify="right")

    for wave_number, wave in enumerate(dag.get_waves()):
        for node_id in wave:
            subtask = dag.get_node(node_id).data
            deps = ", ".join(sorted(subtask.dependencies)) or "-"
            table.add_row(str(wave_number), node_id, deps, str(len(subtask.commands)))
    console.print(table)

    if not run:
        return

    page = _load_page(html, url="about:blank")

    async def execute() -> None:
        executor = create_graph_executor(StaticPageExecutor(page))
        result = await executor.execute_graph(dag)
        for subtask in result.subtasks:
            color = "green" if subtask.is_completed() else "red"
            detail = f" - {subtask.result.error}" if subtask.result and subtask.result.error else ""
            console.print(f"  {subtask.id}: [{color}]{subtask.status.value}[/{color}]{detail}")
        if not result.success:
            raise typer.Exit(code=1)

    anyio.run(execute)


@app.command()
def decompose(
    instruction: str = typer.Argument(..., help="Test instruction to decompose"),
    html: Path | None = typer.Option(
        None,
        "--html",
        help="HTML snapshot of the page under test",
    ),
    url: str = typer.Option("about:blank", "--url", help="URL of the page under test"),
    iterative: bool = typer.Option(
        False,
        "--iterative",
        "-i",
        help="Ask for one command at a time instead of planning first",
    ),
    max_iterations: int = typer.Option(10, "--max-iterations", help="Cap for --iterative"),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the generated DSL to this file",
    ),
) -> None:
    """
    Decompose an instruction into DSL commands.

    Example:
        e2e-agent decompose "Log in as admin" --html login.html -o login.ox
    """
    from e2e_agent.decomposition.engine import DecompositionEngine
    from e2e_agent.llm.gateway import ModelGateway

    page = _load_page(html, url)

    async def do_decompose() -> None:
        gateway = ModelGateway.from_settings()
        engine = DecompositionEngine.from_settings(gateway, page=page)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            progress.add_task("Decomposing instruction...", total=None)
            if iterative:
                subtask = await engine.decompose_iteratively(instruction, max_iterations)
            else:
                subtask = await engine.decompose(instruction)

        console.print(_commands_table(subtask.commands, instruction))
        stats = gateway.get_stats()
        console.print(
            f"[dim]{stats['total_requests']} model requests, "
            f"${stats.get('cost_summary', {}).get('total_cost', 0.0):.4f}[/dim]"
        )

        if output:
            output.write_text(serialize_commands(subtask.commands) + "\n", encoding="utf-8")
            console.print(f"[green]Saved to {output}[/green]")

    try:
        anyio.run(do_decompose)
    except E2EAgentError as e:
        console.print(f"[bold red]Decomposition failed: {e}[/bold red]")
        raise typer.Exit(code=1) from e


@app.command()
def heal(
    file: Path = typer.Argument(..., help="DSL file to execute and repair"),
    html: Path = typer.Option(..., "--html", help="HTML snapshot of the page under test"),
    url: str = typer.Option("about:blank", "--url", help="URL of the page under test"),
    name: str | None = typer.Option(None, "--name", "-n", help="Test name"),
    max_attempts: int | None = typer.Option(
        None,
        "--max-attempts",
        help="Override E2E_SELF_HEAL_MAX_ATTEMPTS",
    ),
    write: bool = typer.Option(
        False,
        "--write",
        "-w",
        help="Overwrite FILE with the healed commands on success",
    ),
) -> None:
    """
    Dry-run a DSL file against an HTML snapshot, repairing failures.

    Example:
        e2e-agent heal checkout.ox --html checkout.html --write
    """
    from e2e_agent.execution.executor import StaticPageExecutor
    from e2e_agent.healing.orchestrator import SelfHealingOrchestrator
    from e2e_agent.llm.gateway import ModelGateway

    if not file.is_file():
        console.print(f"[bold red]File not found: {file}[/bold red]")
        raise typer.Exit(code=1)

    content = file.read_text(encoding="utf-8")
    page = _load_page(html, url)
    test_name = name or file.stem

    async def do_heal() -> None:
        gateway = ModelGateway.from_settings()
        healer = SelfHealingOrchestrator.from_settings(gateway, StaticPageExecutor(page), page=page)
        result = await healer.refine_test(content, test_name, max_attempts=max_attempts)

        if result.success:
            console.print(
                Panel(
                    result.final_content or "",
                    title=f"[bold green]{test_name} passed after {result.attempts} attempt(s)[/bold green]",
                    border_style="green",
                )
            )
            if write and result.final_content:
                file.write_text(result.final_content + "\n", encoding="utf-8")
                console.print(f"[green]Updated {file}[/green]")
            return

        for number, failure in enumerate(result.failure_history, start=1):
            console.print(
                f"  Attempt {number}: [yellow]{failure.failure_category.value}[/yellow] "
                f"{failure.error}"
            )
        console.print(
            f"[bold red]{test_name} still failing after {result.attempts} attempts: "
            f"{result.last_error}[/bold red]"
        )
        raise typer.Exit(code=1)

    try:
        anyio.run(do_heal)
    except E2EAgentError as e:
        console.print(f"[bold red]Self-healing failed: {e}[/bold red]")
        raise typer.Exit(code=1) from e


if __name__ == "__main__":
    app()
