"""RepoLens CLI - repository analysis and documentation synthesis.

Usage:
    repolens analyze https://github.com/sveltejs/kit
    repolens status sveltejs/kit
    repolens describe sveltejs/kit Routes
    repolens ask sveltejs/kit "Where is routing handled?"
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.tree import Tree

from . import __version__, config
from .cache import DescriptionCache
from .chat import ChatAssistant
from .errors import RepoLensError
from .freshness import FreshnessTracker
from .generator import DescriptionSynthesizer
from .github import GitHubClient, parse_github_url
from .graph import DEFAULT_MAX_RELATED, build_graph, related_subsystems
from .logger import setup_logging
from .model import OllamaClient
from .pipeline import AnalysisPipeline
from .schema import AnalysisResult, AnalysisStatus, Repository
from .sessions import SessionStore
from .store import DocumentStore

console = Console()

STATUS_STYLES = {
    AnalysisStatus.PENDING: "dim",
    AnalysisStatus.ANALYZING: "yellow",
    AnalysisStatus.COMPLETED: "green",
    AnalysisStatus.FAILED: "red",
}


@dataclass
class Services:
    store: DocumentStore
    github: GitHubClient
    model: OllamaClient
    tracker: FreshnessTracker
    synthesizer: DescriptionSynthesizer
    sessions: SessionStore
    pipeline: AnalysisPipeline
    chat: ChatAssistant


@asynccontextmanager
async def open_services(db_path: str, model_name: str) -> AsyncIterator[Services]:
    """Construct every client once and close them on exit."""
    store = DocumentStore(db_path)
    github = GitHubClient()
    model = OllamaClient(model=model_name)
    try:
        tracker = FreshnessTracker(store)
        cache = DescriptionCache(store)
        synthesizer = DescriptionSynthesizer(model, store, cache, github=github)
        sessions = SessionStore(store)
        yield Services(
            store=store,
            github=github,
            model=model,
            tracker=tracker,
            synthesizer=synthesizer,
            sessions=sessions,
            pipeline=AnalysisPipeline(github, store, tracker, synthesizer),
            chat=ChatAssistant(model, store, sessions),
        )
    finally:
        await github.aclose()
        await model.aclose()
        store.close()


def _run(ctx: click.Context, work):
    """Run `work(services)` on a fresh event loop; library errors become CLI errors."""

    async def main():
        async with open_services(ctx.obj["db"], ctx.obj["model"]) as services:
            return await work(services)

    try:
        return asyncio.run(main())
    except RepoLensError as e:
        raise click.ClickException(f"{e.label}: {e.message}") from e


def _repo_id(reference: str) -> str:
    try:
        return parse_github_url(reference).id
    except RepoLensError:
        # Already an id such as owner__name
        return reference.lower()


@click.group()
@click.version_option(version=__version__)
@click.option("--db", default=str(config.DATABASE_PATH), show_default=True, help="SQLite database path")
@click.option("--model", "-m", default=config.MODEL_NAME, show_default=True, help="Ollama model name")
@click.option("--log-file", default=None, help="Also write logs to this file")
@click.pass_context
def cli(ctx: click.Context, db: str, model: str, log_file: str | None):
    """RepoLens - analyze GitHub repositories into navigable documentation.

    Partitions a repository into subsystems, describes them with a local
    model and answers questions grounded in the analysis.
    """
    setup_logging(config.LOG_LEVEL, log_file)
    ctx.ensure_object(dict)
    ctx.obj["db"] = db
    ctx.obj["model"] = model


@cli.command()
@click.argument("url")
@click.option("--force", is_flag=True, help="Re-analyze even if upstream has not changed")
@click.option("--enrich/--no-enrich", default=False, help="Describe every subsystem with the model")
@click.option("--json-only", is_flag=True, help="Output raw JSON to stdout (for piping)")
@click.option("--wait", is_flag=True, help="Wait if another analysis is already running")
@click.pass_context
def analyze(ctx: click.Context, url: str, force: bool, enrich: bool, json_only: bool, wait: bool):
    """Analyze a repository and store the result.

    URL can be a GitHub URL or owner/repo shorthand.

    Examples:

        repolens analyze https://github.com/sveltejs/kit

        repolens analyze pallets/flask --enrich
    """
    if not json_only:
        console.print()
        console.print(Panel.fit(
            f"[bold cyan]RepoLens v{__version__}[/] - Repository Analysis",
            border_style="cyan",
        ))

    async def work(services: Services):
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=Console(quiet=True) if json_only else console,
        ) as progress:
            task = progress.add_task("Starting...", total=None)

            def on_progress(status, current, total):
                progress.update(task, description=status, completed=current, total=total or None)

            return await services.pipeline.analyze(
                url, force=force, enrich=enrich, wait=wait, progress_callback=on_progress
            )

    outcome = _run(ctx, work)

    if json_only:
        click.echo(json.dumps({
            "repository": outcome.repository.to_dict(),
            "analysis": outcome.analysis.to_dict() if outcome.analysis else None,
            "started": outcome.started,
            "reused": outcome.reused,
        }, indent=2))
        return

    if not outcome.started:
        console.print(
            f"[yellow]An analysis of {outcome.repository.full_name} is already in progress "
            f"(status: {outcome.repository.analysis_status.value}).[/]"
        )
    elif outcome.reused:
        console.print("[green]Repository unchanged upstream; stored analysis kept.[/]")

    _print_repository(outcome.repository)
    if outcome.analysis:
        _print_analysis(outcome.analysis)


@cli.command()
@click.argument("repo", required=False)
@click.pass_context
def status(ctx: click.Context, repo: str | None):
    """Show analysis status for one repository, or all of them."""

    async def work(services: Services):
        if repo:
            return [await services.tracker.get_repository(_repo_id(repo))]
        return await asyncio.to_thread(services.store.list_repositories)

    repos = _run(ctx, work)
    if not repos:
        console.print("[yellow]No repositories analyzed yet. Run: repolens analyze <url>[/]")
        return

    table = Table(show_header=True)
    table.add_column("Repository", style="bold")
    table.add_column("Status")
    table.add_column("Last analyzed")
    table.add_column("Error")
    for r in repos:
        style = STATUS_STYLES[r.analysis_status]
        table.add_row(
            r.full_name,
            f"[{style}]{r.analysis_status.value}[/]",
            r.last_analyzed.strftime("%Y-%m-%d %H:%M") if r.last_analyzed else "-",
            r.last_error or "",
        )
    console.print(table)


@cli.command()
@click.argument("repo")
@click.argument("subsystem")
@click.option("--regenerate", is_flag=True, help="Ignore the cache and ask the model again")
@click.pass_context
def describe(ctx: click.Context, repo: str, subsystem: str, regenerate: bool):
    """Describe one subsystem of an analyzed repository."""

    async def work(services: Services):
        return await services.synthesizer.describe_subsystem(_repo_id(repo), subsystem, regenerate=regenerate)

    description = _run(ctx, work)
    title = description.name + (" (fallback)" if description.fallback else "")
    body = [f"[bold]Purpose:[/] {description.purpose}"]
    if description.description and description.description != description.purpose:
        body.append(description.description)
    for label, values in (
        ("Entry points", description.entry_points),
        ("Key files", description.key_files),
        ("Technologies", description.technologies),
        ("Dependencies", description.dependencies),
    ):
        if values:
            body.append(f"[bold]{label}:[/] {', '.join(values)}")
    console.print(Panel("\n".join(body), title=title, border_style="cyan"))


@cli.command()
@click.argument("repo")
@click.option("--regenerate", is_flag=True, help="Ignore the cache and ask the model again")
@click.pass_context
def architecture(ctx: click.Context, repo: str, regenerate: bool):
    """Describe the overall architecture of an analyzed repository."""

    async def work(services: Services):
        return await services.synthesizer.describe_architecture(_repo_id(repo), regenerate=regenerate)

    console.print(Panel(Markdown(_run(ctx, work)), title="Architecture", border_style="cyan"))


@cli.command()
@click.argument("repo")
@click.argument("path")
@click.pass_context
def explain(ctx: click.Context, repo: str, path: str):
    """Explain a single file of an analyzed repository."""

    async def work(services: Services):
        return await services.synthesizer.explain_file(_repo_id(repo), path)

    console.print(Panel(Markdown(_run(ctx, work)), title=path, border_style="cyan"))


@cli.command()
@click.argument("repo")
@click.option("--related", "include_related", is_flag=True, help="Add edges between related subsystems")
@click.option("--json-only", is_flag=True, help="Output raw JSON to stdout")
@click.pass_context
def graph(ctx: click.Context, repo: str, include_related: bool, json_only: bool):
    """Show the architecture graph model."""
    analysis = _require_analysis(ctx, repo)
    model = build_graph(analysis.subsystems, analysis.framework, include_related)

    if json_only:
        click.echo(json.dumps(model.to_dict(), indent=2))
        return

    labels = {n.id: n.label for n in model.nodes}
    tree = Tree(f"[bold]{analysis.framework.display_name} architecture[/]")
    for node in model.nodes:
        branch = tree.add(f"{node.label} [dim]({node.role.value})[/]")
        for edge in model.edges:
            if edge.source == node.id:
                arrow = "->" if edge.kind == "flow" else "~"
                branch.add(f"{arrow} {labels[edge.target]}")
    console.print(tree)


@cli.command()
@click.argument("repo")
@click.argument("subsystem")
@click.option("--max", "max_results", default=DEFAULT_MAX_RELATED, show_default=True, help="Maximum results")
@click.pass_context
def related(ctx: click.Context, repo: str, subsystem: str, max_results: int):
    """List subsystems related to SUBSYSTEM by shared directories."""
    analysis = _require_analysis(ctx, repo)
    target = analysis.get_subsystem(subsystem)
    if target is None:
        raise click.ClickException(f"Subsystem {subsystem!r} not found")
    names = related_subsystems(target.name, analysis.subsystems, max_results)
    if not names:
        console.print(f"[yellow]No subsystems related to {target.name}.[/]")
        return
    for name in names:
        console.print(f"  - {name}")


@cli.command()
@click.argument("repo")
@click.argument("question")
@click.option("--client", "client_id", default="default", help="Client context for the session")
@click.pass_context
def ask(ctx: click.Context, repo: str, question: str, client_id: str):
    """Ask a question about an analyzed repository."""

    async def work(services: Services):
        return await services.chat.ask(_repo_id(repo), question, client_id=client_id)

    answer = _run(ctx, work)
    console.print(Markdown(answer.content))


@cli.command()
@click.argument("repo")
@click.option("--limit", default=config.CHAT_HISTORY_LIMIT, show_default=True, help="Show the latest N messages")
@click.option("--client", "client_id", default="default", help="Client context for the session")
@click.pass_context
def history(ctx: click.Context, repo: str, limit: int, client_id: str):
    """Show the current chat session for a repository."""

    async def work(services: Services):
        session = await services.sessions.get_or_create_session(_repo_id(repo), client_id)
        return await services.sessions.load_messages(session.id, limit=limit)

    messages = _run(ctx, work)
    if not messages:
        console.print("[dim]No messages yet.[/]")
        return
    for m in messages:
        style = "cyan" if m.role.value == "user" else "green"
        console.print(f"[bold {style}]{m.role.value}[/] [dim]{m.timestamp:%Y-%m-%d %H:%M}[/]")
        console.print(m.content)
        console.print()


@cli.command()
@click.pass_context
def check(ctx: click.Context):
    """Check that the generative-text service is reachable."""

    async def work(services: Services):
        running = await services.model.is_running()
        available = await services.model.is_model_available() if running else False
        return running, available, services.model.model

    running, available, model_name = _run(ctx, work)
    if not running:
        console.print("[yellow]Ollama is not running. Start with: ollama serve[/]")
        raise SystemExit(1)
    console.print("[green]Ollama is running[/]")
    if available:
        console.print(f"[green]Model {model_name} is available[/]")
    else:
        console.print(f"[yellow]Model {model_name} not installed. Run: ollama pull {model_name}[/]")
        raise SystemExit(1)


@cli.command()
@click.option("--port", default=8420, show_default=True, help="Port to serve on")
@click.option("--open", "open_browser", is_flag=True, help="Open the API in a browser")
@click.pass_context
def serve(ctx: click.Context, port: int, open_browser: bool):
    """Serve stored analyses as a local JSON API."""
    from .serve import start_server

    store = DocumentStore(ctx.obj["db"])
    console.print(f"Serving on [bold]http://localhost:{port}/api/repos[/] (Ctrl+C to stop)")
    try:
        start_server(store, port=port, open_browser=open_browser)
    finally:
        store.close()


@cli.command()
def version():
    """Show version information."""
    console.print(f"repolens v{__version__}")
    console.print("Repository analysis and documentation synthesis")


def _require_analysis(ctx: click.Context, repo: str) -> AnalysisResult:
    store = DocumentStore(ctx.obj["db"])
    try:
        repo_id = _repo_id(repo)
        store.require_repository(repo_id)
        analysis = store.get_analysis(repo_id)
    except RepoLensError as e:
        raise click.ClickException(f"{e.label}: {e.message}") from e
    finally:
        store.close()
    if analysis is None:
        raise click.ClickException(f"No completed analysis for {repo}. Run: repolens analyze {repo}")
    return analysis


def _print_repository(repo: Repository) -> None:
    table = Table(title="Repository", show_header=False, border_style="dim")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Name", repo.full_name)
    if repo.description:
        table.add_row("Description", repo.description[:80])
    table.add_row("Stars / Forks", f"{repo.stars:,} / {repo.forks:,}")
    if repo.primary_language:
        table.add_row("Language", repo.primary_language)
    style = STATUS_STYLES[repo.analysis_status]
    table.add_row("Status", f"[{style}]{repo.analysis_status.value}[/]")
    if repo.last_error:
        table.add_row("Error", f"[red]{repo.last_error}[/]")
    console.print(table)


def _print_analysis(analysis: AnalysisResult) -> None:
    """Print a compact summary of the structural analysis."""
    console.print()
    console.print(f"[bold]Framework:[/] {analysis.framework.display_name}  "
                  f"[bold]Files:[/] {analysis.file_count:,}")

    if analysis.languages:
        total = sum(analysis.languages.values()) or 1
        langs = ", ".join(
            f"{k} ({v / total * 100:.0f}%)" for k, v in list(analysis.languages.items())[:5]
        )
        console.print(f"[bold]Languages:[/] {langs}")

    tree = Tree("[bold]Subsystems[/]")
    for subsystem in analysis.subsystems:
        described = analysis.get_description(subsystem.name)
        purpose = described.purpose if described else subsystem.description
        tree.add(f"{subsystem.name} ({len(subsystem.files)} files) [dim]{purpose}[/]")
    console.print(tree)


if __name__ == "__main__":
    cli()
