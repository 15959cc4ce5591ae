"""Main CLI entry point for vcshub maintenance tasks."""

from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vcshub.config import Settings
from vcshub.core import VCSCore
from vcshub.core.common import new_id, utc_now
from vcshub.errors import InvalidError, VCSHubError
from vcshub.log import configure_logging
from vcshub.models import ReconcileResult, ReconcileStatus, Team

console = Console()
app = typer.Typer(
    name="vcshub",
    help="Maintenance tool for the vcshub version-control core",
    add_completion=False,
)


class _State:
    config: Optional[Path] = None


state = _State()


def build_core(config: Optional[Path]) -> VCSCore:
    """Open the metadata store and object store from configuration."""
    settings = Settings.load(config)
    configure_logging(settings.logging.level)
    return VCSCore.from_settings(settings)


def _fail(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}", style="red")
    raise typer.Exit(1)


@app.callback()
def cli(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a vcshub.yaml configuration file",
    ),
) -> None:
    """Version control core: projects, branches, commits, locks and storage GC."""
    state.config = config


@app.command()
def version() -> None:
    """Show vcshub version."""
    from vcshub import __version__
    typer.echo(f"vcshub version {__version__}")


@app.command()
def init(
    skip_bucket: bool = typer.Option(
        False,
        "--skip-bucket",
        help="Do not install the multipart upload expiry rule on the bucket",
    ),
) -> None:
    """Create the metadata schema and configure the storage bucket."""
    try:
        with build_core(state.config) as core:
            if not skip_bucket:
                core.deps.blob_store.ensure_upload_expiry()
            settings = core.deps.settings
            message = f"""[bold green]✓[/bold green] Initialized vcshub

[dim]Metadata store:[/dim] {settings.database.path}
[dim]Bucket:[/dim] {settings.storage.bucket}
[dim]Upload expiry rule:[/dim] {"skipped" if skip_bucket else "installed"}
"""
            console.print(Panel(message, border_style="green", title="vcshub Initialized"))
    except VCSHubError as e:
        _fail(f"Failed to initialize: {e.message}")


@app.command("create-team")
def create_team(name: str = typer.Argument(..., help="Team name")) -> None:
    """Register a team so projects and usage can be attached to it."""
    try:
        with build_core(state.config) as core:
            if not name.strip():
                raise InvalidError("Team name is required")
            team = Team(id=new_id(), name=name.strip(), created_at=utc_now())
            core.deps.db.insert_team(team)
            console.print(f"[green]Created team[/green] {team.name} [dim]({team.id})[/dim]")
    except VCSHubError as e:
        _fail(e.message)


@app.command("create-project")
def create_project(
    team_id: str = typer.Argument(..., help="Owning team ID"),
    name: str = typer.Argument(..., help="Project name"),
) -> None:
    """Create a project with its default branch and initial commit."""
    try:
        with build_core(state.config) as core:
            project = core.create_project(team_id, name)
            console.print(
                f"[green]Created project[/green] {project.name} [dim]({project.id})[/dim]\n"
                f"  default branch: {project.default_branch_id}"
            )
    except VCSHubError as e:
        _fail(e.message)


@app.command("delete-project")
def delete_project(
    project_id: str = typer.Argument(..., help="Project ID"),
    purge: bool = typer.Option(False, "--purge", help="Also delete the project's stored objects"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete a project, its branches and its commits."""
    if not yes:
        typer.confirm(f"Delete project {project_id}?", abort=True)
    try:
        with build_core(state.config) as core:
            core.delete_project(project_id, purge_storage=purge)
            console.print(f"[green]Deleted project[/green] {project_id}")
    except VCSHubError as e:
        _fail(e.message)


@app.command("create-branch")
def create_branch(
    project_id: str = typer.Argument(..., help="Project ID"),
    name: str = typer.Argument(..., help="Branch name"),
    from_index: Optional[int] = typer.Option(
        None,
        "--from-index",
        help="Commit index to branch from (default: the default branch's head)",
    ),
) -> None:
    """Create a branch in a project."""
    try:
        with build_core(state.config) as core:
            branch = core.create_branch(project_id, name, from_index)
            console.print(f"[green]Created branch[/green] {branch.name} [dim]({branch.id})[/dim]")
    except VCSHubError as e:
        _fail(e.message)


def _print_locks(paths: List[str]) -> None:
    if not paths:
        console.print("[dim]No locked paths[/dim]")
        return
    console.print("[bold]Locked paths:[/bold]")
    for path in paths:
        console.print(f"  [yellow]{path}[/yellow]")


@app.command()
def lock(
    branch_id: str = typer.Argument(..., help="Branch ID"),
    paths: List[str] = typer.Argument(..., help="Files or directories to lock"),
    user: str = typer.Option("", "--user", "-u", help="Lock holder allowed to commit"),
) -> None:
    """Lock paths on a branch."""
    try:
        with build_core(state.config) as core:
            _print_locks(core.lock(branch_id, paths, user))
    except VCSHubError as e:
        _fail(e.message)


@app.command()
def unlock(
    branch_id: str = typer.Argument(..., help="Branch ID"),
    paths: List[str] = typer.Argument(..., help="Files or directories to unlock"),
) -> None:
    """Unlock paths on a branch."""
    try:
        with build_core(state.config) as core:
            _print_locks(core.unlock(branch_id, paths))
    except VCSHubError as e:
        _fail(e.message)


@app.command()
def log(
    project_id: str = typer.Argument(..., help="Project ID"),
    branch_id: Optional[str] = typer.Option(None, "--branch", "-b", help="Only this branch"),
    max_count: int = typer.Option(10, "--max-count", "-n", help="Limit number of commits to show"),
    oneline: bool = typer.Option(False, "--oneline", help="Show each commit on a single line"),
) -> None:
    """Show commit history, newest first."""
    try:
        with build_core(state.config) as core:
            core.registry.get_project(project_id)
            commits = core.ledger.list_commits(project_id, branch_id=branch_id, limit=max_count)
    except VCSHubError as e:
        _fail(e.message)
        return

    if not commits:
        console.print("[dim]No commits yet[/dim]")
        return

    if oneline:
        for commit in commits:
            summary = commit.message.split("\n")[0]  # First line only
            console.print(f"[yellow]{commit.index:>4}[/yellow] {summary}")
        return

    table = Table(title=f"Commits of {project_id}")
    table.add_column("Index", justify="right", style="yellow")
    table.add_column("Date")
    table.add_column("Author")
    table.add_column("Message")
    table.add_column("Changes", justify="right")
    for commit in commits:
        changes = (
            f"+{len(commit.created_files)} ~{len(commit.modified_files)} "
            f"-{len(commit.deleted_files)}"
        )
        table.add_row(
            str(commit.index),
            commit.created_at[:19].replace("T", " "),
            commit.author_id or "[dim]system[/dim]",
            commit.message,
            changes,
        )
    console.print(table)


def _print_gc_results(results: List[ReconcileResult]) -> None:
    table = Table(title="Garbage collection")
    table.add_column("Project")
    table.add_column("Status")
    table.add_column("Scanned", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Kept (recent)", justify="right")
    colors = {
        ReconcileStatus.COMPLETE: "green",
        ReconcileStatus.PARTIAL: "yellow",
        ReconcileStatus.CANCELLED: "red",
    }
    for result in results:
        color = colors[result.status]
        table.add_row(
            result.project_id,
            f"[{color}]{result.status.value}[/{color}]",
            str(result.scanned_count),
            str(result.deleted_count),
            str(len(result.failed_keys)),
            str(result.skipped_recent),
        )
    console.print(table)
    for result in results:
        if result.continuation_token:
            console.print(
                f"[dim]Resume {result.project_id} with --resume {result.continuation_token}[/dim]"
            )


@app.command()
def gc(
    project_id: Optional[str] = typer.Argument(None, help="Project ID"),
    all_projects: bool = typer.Option(False, "--all", help="Collect garbage in every project"),
    resume: Optional[str] = typer.Option(None, "--resume", help="Continuation token of a cancelled pass"),
    abort_uploads: bool = typer.Option(
        False,
        "--abort-uploads",
        help="Also abort multipart uploads older than the retention window",
    ),
) -> None:
    """Delete stored objects that no commit references."""
    if not project_id and not all_projects:
        _fail("Give a project ID or --all")
    if project_id and all_projects:
        _fail("Give either a project ID or --all, not both")

    try:
        with build_core(state.config) as core:
            if all_projects:
                results = core.gc.reconcile_all()
                project_ids = [result.project_id for result in results]
            else:
                results = [core.reconcile_project(project_id, start_token=resume)]  # type: ignore[arg-type]
                project_ids = [project_id]  # type: ignore[list-item]

            if abort_uploads:
                aborted = sum(core.gc.abort_stale_uploads(pid) for pid in project_ids)
                console.print(f"[dim]Aborted {aborted} stale multipart upload(s)[/dim]")
    except VCSHubError as e:
        _fail(e.message)
        return

    _print_gc_results(results)
    if any(result.status is not ReconcileStatus.COMPLETE for result in results):
        raise typer.Exit(1)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
