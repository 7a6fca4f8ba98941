"""Typer-based CLI for BugScope bug-report analysis."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, config, config_manager
from .context_builder import assemble_context
from .discovery import find_relevant_files
from .errors import StageFailedError
from .imports import build_import_graph, expand_files_with_imports
from .issue_parser import build_issue_context, split_issue_file
from .llm import LocalLLM
from .models import IssueContext, PipelineResult
from .orchestrator import extract_level_criteria, determine_level, format_pipeline_summary, level_score, run_analysis

console = Console()

app = typer.Typer(
    help="🐞 BugScope: find the code behind a bug report and explain it.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

ALL_PROVIDERS = ["ollama", "groq", "openai", "anthropic", "gemini", "openrouter"]


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"BugScope CLI v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Show pipeline logs."),
):
    """BugScope CLI: bug-report driven code retrieval and multi-stage LLM analysis."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        )


def _load_issue(issue_file: Path, title: Optional[str]) -> IssueContext:
    text = issue_file.read_text(encoding="utf-8", errors="replace")
    issue_title, body = split_issue_file(text, title)
    return build_issue_context(issue_title, body)


def _parse_level(level: str) -> Optional[int]:
    level = level.strip().lower()
    if level == "auto":
        return None
    if level in ("1", "2"):
        return int(level)
    raise typer.BadParameter("Level must be 'auto', '1' or '2'.")


def _result_payload(result: PipelineResult) -> Dict[str, Any]:
    return {
        "level": int(result.level),
        "degraded": result.degraded,
        "total_duration_ms": result.total_duration_ms,
        "states": [state.value for state in result.states],
        "stages": {
            name: {"success": out.success, "duration_ms": out.duration_ms, "error": out.error}
            for name, out in result.stage_outputs.items()
        },
        "analysis": result.analysis.model_dump(),
    }


def _print_analysis(result: PipelineResult) -> None:
    analysis = result.analysis
    root = analysis.root_cause

    if not analysis.is_valid_report:
        console.print(Panel(
            analysis.invalid_reason or "The report does not contain enough information to analyze.",
            title="[yellow]Insufficient report[/yellow]",
            border_style="yellow",
        ))
    else:
        header = (
            f"[bold]Severity:[/bold] {analysis.severity}   "
            f"[bold]Category:[/bold] {analysis.category}   "
            f"[bold]Confidence:[/bold] {analysis.confidence:.0f}%"
        )
        body = f"{header}\n\n[bold]{root.summary}[/bold]\n\n{root.explanation}"
        if root.affected_files:
            body += "\n\n[bold]Affected files:[/bold]\n" + "\n".join(f"  • {f}" for f in root.affected_files)
        if root.evidence_chain:
            body += "\n\n[bold]Evidence chain:[/bold]\n" + "\n".join(
                f"  {i}. {step}" for i, step in enumerate(root.evidence_chain, 1)
            )
        console.print(Panel(body, title="[cyan]Root cause[/cyan]", border_style="cyan"))

        if analysis.suggested_fix.steps:
            console.print("[bold]Suggested fix:[/bold]")
            for i, step in enumerate(analysis.suggested_fix.steps, 1):
                console.print(f"  {i}. {step}")
        for change in analysis.suggested_fix.code_changes:
            location = f"{change.file}:{change.line}" if change.line else change.file
            console.print(f"\n[bold]{location}[/bold]: {change.description}")
            console.print(change.after, markup=False)

    if analysis.additional_context:
        console.print()
        console.print(analysis.additional_context, markup=False)
    console.print()
    console.print(format_pipeline_summary(result), markup=False)


# ===================================================================
# Pipeline commands
# ===================================================================

@app.command("analyze")
def analyze(
    issue_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text/markdown file with the bug report."),
    root: Path = typer.Option(Path("."), "--root", "-r", exists=True, file_okay=False, help="Repository to search."),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Issue title (defaults to the first line)."),
    level: str = typer.Option("auto", "--level", "-l", help="Analysis level: auto, 1 (fast) or 2 (thorough)."),
    max_files: int = typer.Option(config.MAX_FILES, "--max-files", "-n", help="Maximum files to discover."),
    no_review: bool = typer.Option(False, "--no-review", help="Skip the reviewer stage."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Overall deadline in seconds."),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
):
    """Run the full analysis pipeline on a bug report."""
    ctx = _load_issue(issue_file, title)
    force_level = _parse_level(level)

    pipeline = run_analysis(
        ctx,
        llm=LocalLLM(),
        base_dir=str(root),
        max_files=max_files,
        force_level=force_level,
        enable_reviewer=False if no_review else None,
        timeout=timeout,
    )
    try:
        if as_json:
            result = asyncio.run(pipeline)
        else:
            with console.status("[cyan]Analyzing bug report...[/cyan]", spinner="dots"):
                result = asyncio.run(pipeline)
    except StageFailedError as exc:
        console.print(f"[red]❌ {exc}[/red]")
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(_result_payload(result), indent=2))
        return
    _print_analysis(result)


@app.command("find")
def find(
    issue_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text/markdown file with the bug report."),
    root: Path = typer.Option(Path("."), "--root", "-r", exists=True, file_okay=False, help="Repository to search."),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Issue title (defaults to the first line)."),
    max_files: int = typer.Option(config.MAX_FILES, "--max-files", "-n", help="Maximum files to discover."),
):
    """Discover and rank relevant files (no LLM)."""
    ctx = _load_issue(issue_file, title)
    files = find_relevant_files(str(root), ctx.keywords, ctx.error_locations, ctx.error_messages, max_files)
    graph = build_import_graph(files, str(root))
    if graph:
        files = expand_files_with_imports(files, graph)

    if not files:
        typer.echo("No relevant files found.")
        raise typer.Exit(code=0)

    base = root.resolve()
    table = Table(title=f"Relevant files ({len(files)})", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("File", style="cyan")
    table.add_column("Score", justify="right", style="bold")
    table.add_column("Path", justify="right")
    table.add_column("Content", justify="right")
    table.add_column("Evidence")
    for i, f in enumerate(files, 1):
        try:
            shown = Path(f.path).relative_to(base).as_posix()
        except ValueError:
            shown = f.path
        table.add_row(
            str(i), shown, str(f.relevance_score), str(f.path_score), str(f.content_score),
            ", ".join(f.matched_keywords[:4]),
        )
    console.print(table)


@app.command("context")
def context(
    issue_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text/markdown file with the bug report."),
    root: Path = typer.Option(Path("."), "--root", "-r", exists=True, file_okay=False, help="Repository to search."),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Issue title (defaults to the first line)."),
    max_files: int = typer.Option(config.MAX_FILES, "--max-files", "-n", help="Maximum files to discover."),
):
    """Print the code context that would be sent to the model."""
    ctx = _load_issue(issue_file, title)
    files = find_relevant_files(str(root), ctx.keywords, ctx.error_locations, ctx.error_messages, max_files)
    graph = build_import_graph(files, str(root))
    if graph:
        files = expand_files_with_imports(files, graph)
    bundle = assemble_context(files, ctx.error_locations, ctx.keywords)

    console.print(f"[dim]mode={bundle.mode} chars={len(bundle.text)} chunks={len(bundle.chunks)}[/dim]")
    typer.echo(bundle.text or "No code context could be assembled.")


@app.command("level")
def level(
    issue_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text/markdown file with the bug report."),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Issue title (defaults to the first line)."),
):
    """Show the analysis level the heuristic picks for a report."""
    ctx = _load_issue(issue_file, title)
    criteria = extract_level_criteria(ctx)
    chosen = determine_level(ctx)

    table = Table(title=f"Level {int(chosen)}", show_header=False)
    table.add_column("Criterion", style="bold")
    table.add_column("Value")
    table.add_row("Stack trace", "yes" if criteria.has_stack_trace else "no")
    table.add_row("Error logs", "yes" if criteria.has_error_logs else "no")
    table.add_row("Description quality", criteria.description_quality)
    table.add_row("Error complexity", criteria.error_complexity)
    table.add_row("Score", str(level_score(criteria)))
    console.print(table)


# ===================================================================
# Configuration commands
# ===================================================================

@app.command("set-llm")
def set_llm(
    provider: str = typer.Argument(..., help="LLM provider: ollama, groq, openai, anthropic, gemini, openrouter"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name (uses provider default if not set)."),
    api_key: Optional[str] = typer.Option(None, "--api-key", "-k", help="API key for cloud providers."),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", "-e", help="Custom endpoint URL."),
):
    """Switch the LLM provider.

    Examples:
        bugscope set-llm groq -k YOUR_API_KEY
        bugscope set-llm ollama -m qwen2.5-coder:7b
    """
    provider = provider.lower().strip()
    if provider not in ALL_PROVIDERS:
        console.print(f"[red]Unknown provider '{provider}'. Choose from: {', '.join(ALL_PROVIDERS)}[/red]")
        raise typer.Exit(code=1)
    if provider != "ollama" and not api_key:
        console.print(f"[yellow]No API key given; {provider} calls will fail until one is set.[/yellow]")

    defaults = config_manager.get_provider_config(provider)
    resolved_model = model or defaults.get("model", "")
    resolved_endpoint = endpoint or defaults.get("endpoint", "")

    if not config_manager.save_config(provider, resolved_model, api_key or "", resolved_endpoint):
        console.print("[red]Failed to save configuration![/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] LLM set to [bold]{provider}[/bold] ({resolved_model})")


@app.command("show-llm")
def show_llm():
    """Show the current LLM provider configuration."""
    cfg = config_manager.load_config()
    api_key = cfg.get("api_key", "")

    table = Table(title="LLM Configuration", show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Provider", cfg.get("provider", "ollama"))
    table.add_row("Model", cfg.get("model", ""))
    if cfg.get("endpoint"):
        table.add_row("Endpoint", cfg["endpoint"])
    table.add_row("API Key", api_key[:8] + "•" * min(len(api_key) - 8, 16) if api_key else "(not set)")
    table.add_row("Config", str(config.CONFIG_FILE))
    console.print(table)


@app.command("set-pipeline")
def set_pipeline(
    key: str = typer.Argument(..., help=f"Setting: {', '.join(config_manager.DEFAULT_PIPELINE)}"),
    value: str = typer.Argument(..., help="New value."),
):
    """Change a ``[pipeline]`` setting."""
    if key not in config_manager.DEFAULT_PIPELINE:
        console.print(f"[red]Unknown setting '{key}'.[/red]")
        raise typer.Exit(code=1)

    default = config_manager.DEFAULT_PIPELINE[key]
    try:
        if isinstance(default, bool):
            parsed: Any = value.strip().lower() in ("1", "true", "yes", "on")
        else:
            parsed = type(default)(value)
    except ValueError:
        console.print(f"[red]'{value}' is not a valid {type(default).__name__}.[/red]")
        raise typer.Exit(code=1)

    if not config_manager.save_pipeline_config(**{key: parsed}):
        console.print("[red]Failed to save configuration![/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] {key} = {parsed}")


if __name__ == "__main__":
    app()
