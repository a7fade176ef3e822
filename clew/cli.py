"""
Clew CLI - Typer Commands

Command line front end for the debugging pipeline, project management
and the analytics views.
"""

import asyncio
import logging
from datetime import datetime

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table

from clew import __version__
from clew.config import (
    ClewConfig,
    get_openrouter_key,
    load_config,
    load_session_id,
    save_session_id,
)
from clew.exceptions import ClewError, ConfigError, ValidationError
from clew.gemini.client import GeminiClient
from clew.knowledge.analytics import (
    aggregate_stats,
    analyze_user_patterns,
    cross_project_stats,
    error_breakdown,
    knowledge_base,
    pattern_alert,
)
from clew.logging import set_project_name, set_session_id
from clew.persistence.models import Project
from clew.persistence.repository import KnowledgeRepository
from clew.pipeline.orchestrator import (
    DebugPipeline,
    FeedbackResult,
    PipelineCallbacks,
    PipelineResult,
    Proposal,
    ResultKind,
)

logger = logging.getLogger(__name__)
console = Console()

app = typer.Typer(
    name="clew",
    help="Debugging assistant that learns reusable principles from your fixes",
    add_completion=False,
)
projects_app = typer.Typer(help="Manage debugging projects", add_completion=False)
app.add_typer(projects_app, name="projects")


def _fail(message: str, error: Exception | None = None) -> typer.Exit:
    """Print an error and build the Exit to raise."""
    detail = f" {error}" if error else ""
    console.print(f"[bold red]{message}[/bold red]{detail}")
    return typer.Exit(1)


def _load_config() -> ClewConfig:
    try:
        return load_config()
    except ConfigError as e:
        raise _fail("Configuration error:", e)


def _open_repository(config: ClewConfig) -> KnowledgeRepository:
    repo = KnowledgeRepository(config.db_path)
    try:
        repo.initialize()
    except ClewError as e:
        raise _fail("Failed to open knowledge store:", e)
    return repo


def _resume_session(repo: KnowledgeRepository) -> tuple[str, str]:
    """Resume (or start) the local session. Returns (session_id, current_project_id)."""
    session = repo.get_or_create_session(load_session_id())
    save_session_id(session.id)
    project_id = repo.ensure_default_project(session.id)

    set_session_id(session.id)
    project = repo.get_project(session.id, project_id)
    if project:
        set_project_name(project.name)
    return session.id, project_id


def _find_project(repo: KnowledgeRepository, session_id: str, ref: str) -> Project:
    """Look a project up by exact name or id prefix."""
    projects = repo.get_all_projects_for_session(session_id)
    for project in projects:
        if project.name == ref.strip():
            return project
    matches = [p for p in projects if p.id.startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    raise _fail(f"No project named or identified by '{ref}'")


def _format_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


# ============================================================================
# debug
# ============================================================================


def _show_deja_vu(result: PipelineResult) -> None:
    match = result.deja_vu
    if match is None:
        return
    fix = match.fix
    console.print(
        Panel(
            f"[bold]{fix.error.message[:200]}[/bold]\n\n"
            f"[green]Solution:[/green] {fix.solution.solution}\n"
            f"[dim]{fix.solution.explanation}[/dim]",
            title=f"Déjà vu - {match.similarity:.0%} similar ({_format_time(fix.timestamp)})",
            border_style="magenta",
        )
    )


def _show_proposal(proposal: Proposal, alert: str | None) -> None:
    analysis = proposal.analysis
    style = "yellow" if analysis.used_fallback else "cyan"
    console.print(
        Panel(
            f"[bold]Type:[/bold] {analysis.classification.value}  "
            f"[bold]Confidence:[/bold] {analysis.confidence:.0%}\n"
            f"[bold]Root cause:[/bold] {analysis.root_cause}"
            + (f"\n[bold]Patterns:[/bold] {', '.join(analysis.patterns)}" if analysis.patterns else ""),
            title="Analysis",
            border_style=style,
        )
    )
    if alert:
        console.print(f"[magenta]{alert}[/magenta]")

    if proposal.past_fixes:
        table = Table(title="Past fixes")
        table.add_column("When", style="dim")
        table.add_column("From")
        table.add_column("Solution")
        for fix in proposal.past_fixes:
            table.add_row(
                _format_time(fix.timestamp),
                fix.origin.project_name if fix.origin else "this project",
                fix.solution.solution[:80],
            )
        console.print(table)

    if proposal.principle:
        console.print(
            Panel(
                proposal.principle.principle,
                title=f"Principle ({proposal.principle.category.value})",
                border_style="green",
            )
        )

    if not proposal.solutions:
        console.print("[dim]No stored solutions yet - your feedback will start the knowledge base.[/dim]")
        return

    table = Table(title="Solutions")
    table.add_column("#", justify="right")
    table.add_column("Solution")
    table.add_column("Confidence", justify="right")
    table.add_column("Source", style="dim")
    for i, solution in enumerate(proposal.solutions, 1):
        table.add_row(str(i), solution.solution, f"{solution.confidence:.0%}", solution.source)
    console.print(table)


def _show_feedback(result: FeedbackResult) -> None:
    if not result.helpful:
        console.print("[yellow]Noted - this proposal was not helpful.[/yellow]")
    else:
        if result.fix_id:
            console.print(f"[green]Saved fix {result.fix_id[:8]}[/green]")
        if result.principle_id:
            console.print(f"[green]Learned principle {result.principle_id[:8]}[/green]")
    if result.success_rate is not None:
        console.print(
            f"[dim]Principle success rate now {result.success_rate:.0%} "
            f"over {result.applied_count} uses[/dim]"
        )


async def _debug_session(
    pipeline: DebugPipeline,
    repo: KnowledgeRepository,
    session_id: str,
    project_id: str,
    error_text: str,
    stack: str,
    skip_dejavu: bool,
    answer: bool | None,
) -> None:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting...", total=None)
        pipeline.callbacks.on_step = lambda n, msg: progress.update(task, description=f"[{n}/5] {msg}")
        result = await pipeline.submit(
            error_text, session_id, project_id, skip_dejavu=skip_dejavu, stack_text=stack
        )

    if result.kind == ResultKind.DEJA_VU:
        _show_deja_vu(result)
        apply = answer if answer is not None else Confirm.ask("Apply this past fix?", default=True)
        if apply:
            result = pipeline.apply_past_fix()
        else:
            with console.status("Continuing analysis..."):
                result = await pipeline.continue_analysis()

    proposal = result.proposal
    if proposal is None:
        return

    patterns = analyze_user_patterns(repo, session_id, project_id)
    _show_proposal(proposal, pattern_alert(patterns, proposal.analysis.classification.value))

    helpful = answer if answer is not None else Confirm.ask("Did this help?", default=True)
    feedback = await pipeline.record_feedback(helpful)
    _show_feedback(feedback)


@app.command()
def debug(
    error_text: str = typer.Argument(..., help="Error message to debug"),
    stack: str = typer.Option("", "--stack", "-s", help="Stack trace"),
    skip_dejavu: bool = typer.Option(False, "--skip-dejavu", help="Skip the déjà-vu check"),
    answer: bool | None = typer.Option(
        None, "--yes/--no", help="Answer the prompts up front (apply past fix / helpful)"
    ),
) -> None:
    """Analyze an error and learn from the outcome."""
    config = _load_config()
    try:
        api_key = config.openrouter_api_key or get_openrouter_key()
    except ConfigError as e:
        raise _fail("Client initialization failed:", e)

    repo = _open_repository(config)
    client = GeminiClient(
        api_key,
        model=config.model,
        rate_limit_backoff=config.rate_limit_backoff,
    )
    pipeline = DebugPipeline(
        repo,
        analyzer=client,
        extractor=client,
        config=config,
        callbacks=PipelineCallbacks(
            on_warning=lambda msg: console.print(f"[yellow]Warning:[/yellow] {msg}")
        ),
    )

    async def run() -> None:
        try:
            await _debug_session(
                pipeline, repo, *_resume_session(repo), error_text, stack, skip_dejavu, answer
            )
        finally:
            await client.close()

    try:
        asyncio.run(run())
    except ValidationError as e:
        raise _fail("Invalid input:", e)
    except ClewError as e:
        raise _fail("Debugging failed:", e)
    finally:
        repo.close()


# ============================================================================
# projects
# ============================================================================


@projects_app.command(name="list")
def projects_list() -> None:
    """List projects in the current session."""
    repo = _open_repository(_load_config())
    try:
        session_id, current_id = _resume_session(repo)
        table = Table(title="Projects")
        table.add_column("", width=1)
        table.add_column("Name", style="bold")
        table.add_column("ID", style="dim")
        table.add_column("Tech stack")
        table.add_column("Created", style="dim")
        for project in repo.get_all_projects_for_session(session_id):
            table.add_row(
                "*" if project.id == current_id else "",
                project.name,
                project.id[:8],
                ", ".join(project.tech_stack),
                _format_time(project.created_at),
            )
        console.print(table)
    except ClewError as e:
        raise _fail("Error:", e)
    finally:
        repo.close()


@projects_app.command(name="create")
def projects_create(
    name: str = typer.Argument(..., help="Project name (1-100 characters)"),
    stack: str = typer.Option("", "--stack", help="Comma-separated tech stack"),
    description: str = typer.Option("", "--description", "-d", help="Project description"),
    switch: bool = typer.Option(True, "--switch/--no-switch", help="Make it the current project"),
) -> None:
    """Create a project."""
    repo = _open_repository(_load_config())
    try:
        session_id, _ = _resume_session(repo)
        tech_stack = [s.strip() for s in stack.split(",") if s.strip()]
        project_id = repo.create_project(session_id, name, tech_stack, description)
        if switch:
            repo.set_current_project(session_id, project_id)
        console.print(f"[green]Created project '{name.strip()}'[/green] [dim]({project_id[:8]})[/dim]")
    except ClewError as e:
        raise _fail("Error:", e)
    finally:
        repo.close()


@projects_app.command(name="switch")
def projects_switch(ref: str = typer.Argument(..., help="Project name or id prefix")) -> None:
    """Make a project current."""
    repo = _open_repository(_load_config())
    try:
        session_id, _ = _resume_session(repo)
        project = _find_project(repo, session_id, ref)
        repo.set_current_project(session_id, project.id)
        console.print(f"[green]Switched to '{project.name}'[/green]")
    except ClewError as e:
        raise _fail("Error:", e)
    finally:
        repo.close()


@projects_app.command(name="delete")
def projects_delete(
    ref: str = typer.Argument(..., help="Project name or id prefix"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """Delete a project with all its fixes and principles."""
    repo = _open_repository(_load_config())
    try:
        session_id, _ = _resume_session(repo)
        project = _find_project(repo, session_id, ref)
        if not force and not Confirm.ask(
            f"Delete '{project.name}' and all its fixes and principles?", default=False
        ):
            raise typer.Exit(0)
        repo.delete_project(session_id, project.id)
        console.print(f"[green]Deleted project '{project.name}'[/green]")
    except ClewError as e:
        raise _fail("Error:", e)
    finally:
        repo.close()


# ============================================================================
# history / stats / knowledge
# ============================================================================


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of fixes to show"),
) -> None:
    """Show recent fixes in the current project."""
    repo = _open_repository(_load_config())
    try:
        session_id, project_id = _resume_session(repo)
        fixes = repo.get_all_fixes_for_project(session_id, project_id, limit)
        if not fixes:
            console.print("[dim]No fixes recorded yet.[/dim]")
            return

        table = Table(title="History")
        table.add_column("When", style="dim")
        table.add_column("Type")
        table.add_column("Error")
        table.add_column("Solution")
        table.add_column("Reused", justify="right")
        for fix in fixes:
            table.add_row(
                _format_time(fix.timestamp),
                fix.error.type.value,
                fix.error.message[:60],
                fix.solution.solution[:60],
                str(fix.times_applied),
            )
        console.print(table)
    except ClewError as e:
        raise _fail("Error:", e)
    finally:
        repo.close()


@app.command()
def stats() -> None:
    """Show debugging statistics across all projects."""
    repo = _open_repository(_load_config())
    try:
        session_id, _ = _resume_session(repo)
        totals = aggregate_stats(repo, session_id)
        if totals is None:
            console.print("[dim]No debugging data yet. Run 'clew debug' first.[/dim]")
            return

        console.print(
            Panel(
                f"Fixes: [bold]{totals.total_fixes}[/bold]   "
                f"Principles: [bold]{totals.total_principles}[/bold]   "
                f"Success rate: [bold]{totals.success_rate}%[/bold]   "
                f"Projects: [bold]{totals.total_projects}[/bold]",
                title="Overview",
            )
        )

        breakdown = Table(title="Error types")
        breakdown.add_column("Type")
        breakdown.add_column("Count", justify="right")
        breakdown.add_column("Share", justify="right")
        for entry in error_breakdown(repo, session_id):
            breakdown.add_row(entry.type, str(entry.count), f"{entry.percentage}%")
        console.print(breakdown)

        per_project = Table(title="Projects")
        per_project.add_column("Project")
        per_project.add_column("Fixes", justify="right")
        per_project.add_column("Top error type")
        for entry in cross_project_stats(repo, session_id):
            per_project.add_row(
                entry.project_name,
                str(entry.fix_count),
                f"{entry.top_error_type} ({entry.top_error_percentage}%)",
            )
        console.print(per_project)
    except ClewError as e:
        raise _fail("Error:", e)
    finally:
        repo.close()


@app.command()
def knowledge() -> None:
    """Show every learned principle, best first."""
    repo = _open_repository(_load_config())
    try:
        session_id, _ = _resume_session(repo)
        entries = knowledge_base(repo, session_id)
        if not entries:
            console.print("[dim]No principles learned yet.[/dim]")
            return

        table = Table(title="Knowledge base")
        table.add_column("Principle")
        table.add_column("Category")
        table.add_column("Success", justify="right")
        table.add_column("Uses", justify="right")
        table.add_column("Project", style="dim")
        for entry in entries:
            table.add_row(
                entry.principle,
                entry.category,
                f"{entry.success_rate}%",
                str(entry.applied_count),
                entry.from_project,
            )
        console.print(table)
    except ClewError as e:
        raise _fail("Error:", e)
    finally:
        repo.close()


@app.command()
def version() -> None:
    """Show the installed version."""
    console.print(f"clew {__version__}")


if __name__ == "__main__":
    app()
