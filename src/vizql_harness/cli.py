"""Command-line interface: ask questions, list workbooks and check connectivity."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vizql_harness import __version__
from vizql_harness.config import HarnessConfig, load_config, validate_config
from vizql_harness.core.citations import format_citation_dicts
from vizql_harness.core.context import ContextProvider
from vizql_harness.core.engine import OrchestrationEngine
from vizql_harness.errors import InvalidInputError, OrchestrationError, ToolError
from vizql_harness.events.bus import ProgressEmitter
from vizql_harness.events.sse import SSEWriter
from vizql_harness.llm.client import ModelClient
from vizql_harness.mcp.client import ToolServiceClient
from vizql_harness.types import EventType, ProgressEvent

console = Console()


class StreamingDisplay:
    """Renders progress events to the terminal in real time."""

    def __init__(self, con: Console):
        self.con = con
        self._streaming = False

    def handle(self, event: ProgressEvent):
        data = event.data
        if event.type == EventType.REASONING_STARTED:
            self._flush()
            self.con.print(f"[dim]round {data.get('iteration')}: {data.get('message')}[/dim]")

        elif event.type == EventType.TOOL_CALL_STARTED:
            self._flush()
            params = str(data.get("parameters", {}))
            if len(params) > 120:
                params = params[:120] + "..."
            self.con.print(f"[yellow]> {data.get('tool', '?')}[/yellow] [dim]{params}[/dim]")

        elif event.type == EventType.TOOL_CALL_COMPLETED:
            ok = data.get("result", {}).get("success", False)
            icon = "[green]OK[/green]" if ok else "[red]FAIL[/red]"
            self.con.print(f"  {icon} [dim]{data.get('tool', '')}[/dim]")

        elif event.type == EventType.ANSWER_STARTED:
            self.con.print(f"[dim]{data.get('message')}[/dim]")

        elif event.type == EventType.ANSWER_CHUNK:
            if not self._streaming:
                self._streaming = True
                self.con.print()
            self.con.print(data.get("text", ""), end="", highlight=False)

        elif event.type == EventType.ANSWER_COMPLETED:
            self._flush()
            citations = data.get("citations")
            if citations:
                self.con.print()
                self.con.print(Panel(
                    format_citation_dicts(citations),
                    title="Citations",
                    border_style="cyan",
                    expand=False,
                ))

        elif event.type == EventType.ERROR:
            self._flush()
            self.con.print(Panel(
                _error_text(data.get("message", ""), data.get("recoverySuggestions") or []),
                title="Error",
                border_style="red",
                expand=False,
            ))

    def _flush(self):
        if self._streaming:
            self.con.print()
            self._streaming = False


def _error_text(message: str, suggestions: list[str]) -> str:
    lines = [message]
    if suggestions:
        lines.append("")
        lines.extend(f"• {s}" for s in suggestions)
    return "\n".join(lines)


def _write_stdout(text: str) -> None:
    click.echo(text, nl=False)


def _workbook_table(workbooks: list) -> Table:
    table = Table(title="Workbooks", border_style="dim")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Project", style="dim")
    for wb in workbooks:
        if not isinstance(wb, dict):
            table.add_row("", str(wb), "")
            continue
        project = wb.get("project")
        if isinstance(project, dict):
            project = project.get("name")
        table.add_row(str(wb.get("id", "")), str(wb.get("name", "")), str(project or ""))
    return table


def _setup_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


def _load_checked(config_path: str | None) -> HarnessConfig:
    config = load_config(config_path)
    problems = validate_config(config)
    if problems:
        console.print("[red]Configuration problems:[/red]")
        for problem in problems:
            console.print(f"  [red]- {problem}[/red]")
        sys.exit(2)
    return config


# ---------------------------------------------------------------------------
# Async runners
# ---------------------------------------------------------------------------

async def _ask(
    config: HarnessConfig,
    question: str,
    datasource: str | None,
    workbook: str | None,
    view: str | None,
    max_rounds: int | None,
    sse: bool = False,
) -> int:
    tool_client = ToolServiceClient(config.tool_service)
    model_client = ModelClient(config.model)
    try:
        engine = OrchestrationEngine(
            model_client,
            tool_client,
            config=config.engine,
            defaults=config.defaults,
            context_provider=ContextProvider(tool_client, config.defaults),
        )
        progress = ProgressEmitter()
        if sse:
            progress.subscribe("*", SSEWriter(_write_stdout))
        else:
            progress.subscribe("*", StreamingDisplay(console).handle)

        try:
            await engine.execute(
                question,
                target_resource_id=datasource,
                max_rounds=max_rounds,
                progress=progress,
                workbook_id=workbook or config.defaults.workbook_id,
                view_id=view or config.defaults.view_id,
            )
        except OrchestrationError:
            return 1
        except InvalidInputError as e:
            if sse:
                click.echo(str(e), err=True)
            else:
                console.print(f"[red]{e}[/red]")
            return 2
        return 0
    finally:
        await tool_client.aclose()
        await model_client.aclose()


async def _check(config: HarnessConfig) -> int:
    tool_client = ToolServiceClient(config.tool_service)
    model_client = ModelClient(config.model)
    try:
        tools_ok = await tool_client.test_connection()
        model_ok = await model_client.test_connection()
    finally:
        await tool_client.aclose()
        await model_client.aclose()

    for label, ok, target in (
        ("Tool service", tools_ok, config.tool_service.url),
        ("Model gateway", model_ok, model_client.url),
    ):
        status = "[green]OK[/green]" if ok else "[red]FAIL[/red]"
        console.print(f"{status} {label} [dim]{target}[/dim]")
    return 0 if tools_ok and model_ok else 1


async def _workbooks(config: HarnessConfig, name_filter: str | None, limit: int | None) -> int:
    async with ToolServiceClient(config.tool_service) as tool_client:
        try:
            workbooks = await tool_client.list_workbooks(filter=name_filter, limit=limit)
        except ToolError as e:
            console.print(f"[red]Listing workbooks failed: {e.message}[/red]")
            return 1

    if not workbooks:
        console.print("[dim]No workbooks found.[/dim]")
    else:
        console.print(_workbook_table(workbooks))
    return 0


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@click.group()
@click.version_option(__version__, prog_name="vizql-harness")
def main():
    """vizql-harness - answer questions over VizQL datasources with tool-calling models."""


@main.command()
@click.argument("question")
@click.option("--datasource", "-d", default=None, help="Datasource LUID to lock the run to")
@click.option("--workbook", "-w", default=None, help="Workbook id for context and citations")
@click.option("--view", default=None, help="View id for context and citations")
@click.option("--max-rounds", "-n", type=int, default=None, help="Model rounds before a partial answer")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to vizql_harness.yaml (auto-detected from CWD or ~/.config/vizql-harness/)")
@click.option("--sse", is_flag=True, help="Write progress as Server-Sent Events to stdout")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def ask(question: str, datasource: str | None, workbook: str | None, view: str | None,
        max_rounds: int | None, config_path: str | None, sse: bool, verbose: bool):
    """Answer QUESTION, streaming progress to the terminal."""
    _setup_logging(verbose)
    config = _load_checked(config_path)
    code = asyncio.run(_ask(config, question, datasource, workbook, view, max_rounds, sse=sse))
    sys.exit(code)


@main.command()
@click.option("--filter", "-f", "name_filter", default=None,
              help="Service-side filter expression, e.g. name:eq:Superstore")
@click.option("--limit", "-l", type=int, default=None, help="Maximum number of workbooks")
@click.option("--config", "-c", "config_path", default=None, help="Path to vizql_harness.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def workbooks(name_filter: str | None, limit: int | None, config_path: str | None, verbose: bool):
    """List workbooks visible to the tool service."""
    _setup_logging(verbose)
    config = _load_checked(config_path)
    sys.exit(asyncio.run(_workbooks(config, name_filter, limit)))


@main.command()
@click.option("--config", "-c", "config_path", default=None, help="Path to vizql_harness.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def check(config_path: str | None, verbose: bool):
    """Check that the tool service and the model gateway respond."""
    _setup_logging(verbose)
    config = _load_checked(config_path)
    sys.exit(asyncio.run(_check(config)))


if __name__ == "__main__":
    main()
