"""Diff and history commands."""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from diffwatch.core.diff_engine import DiffEngine
from diffwatch.core.diff_parser import parse_unified_diff
from diffwatch.core.errors import DiffwatchError
from diffwatch.models.diff import DiffResult

console = Console()


def _engine() -> DiffEngine:
    return DiffEngine()


def _print_result(result: DiffResult, title: str, json_output: bool) -> None:
    if json_output:
        typer.echo(result.model_dump_json(indent=2))
        return

    table = Table(title=title)
    table.add_column("File", style="cyan")
    table.add_column("Change")
    table.add_column("+", justify="right", style="green")
    table.add_column("-", justify="right", style="red")

    for change in parse_unified_diff(result.raw_text):
        label = change.change_kind.value
        if change.is_binary:
            label += " (binary)"
        elif change.too_large:
            label += " (too large)"
        if change.old_path and change.old_path != change.path:
            label += f" from {change.old_path}"
        table.add_row(change.path, label, str(change.additions), str(change.deletions))

    console.print(table)
    stats = result.stats
    console.print(
        f"[bold]{stats.files_changed}[/bold] files changed, "
        f"[green]+{stats.additions}[/green] [red]-{stats.deletions}[/red]"
    )


def working_tree(
    path: Path = typer.Argument(Path("."), help="Working tree path"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON"),
):
    """Show uncommitted changes (tracked and untracked) against HEAD."""
    try:
        result = _engine().capture_working_tree_diff(path)
    except DiffwatchError as e:
        console.print(f"[red]Failed to capture diff:[/red] {e}")
        raise typer.Exit(code=1)

    if result.is_empty and not json_output:
        console.print("[dim]No changes[/dim]")
        return
    _print_result(result, f"Working tree: {path}", json_output)


def revision_range(
    from_revision: str = typer.Argument(..., help="Base revision"),
    to_revision: str | None = typer.Argument(None, help="Target revision (default HEAD)"),
    path: Path = typer.Option(Path("."), "--path", "-p", help="Working tree path"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON"),
):
    """Show changes between two revisions."""
    try:
        result = _engine().capture_revision_range_diff(path, from_revision, to_revision)
    except DiffwatchError as e:
        console.print(f"[red]Failed to diff revisions:[/red] {e}")
        raise typer.Exit(code=1)
    _print_result(result, f"{result.before_revision}..{result.after_revision}", json_output)


def show(
    revision: str = typer.Argument(..., help="Commit to show"),
    path: Path = typer.Option(Path("."), "--path", "-p", help="Working tree path"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON"),
):
    """Show the changes introduced by one commit."""
    try:
        result = _engine().get_revision_diff(path, revision)
    except DiffwatchError as e:
        console.print(f"[red]Failed to show commit:[/red] {e}")
        raise typer.Exit(code=1)
    _print_result(result, f"Commit {revision}", json_output)


def log(
    path: Path = typer.Option(Path("."), "--path", "-p", help="Working tree path"),
    limit: int | None = typer.Option(None, "--limit", "-n", min=1, help="Maximum number of commits"),
    exclude: str | None = typer.Option(None, "--exclude", "-x", help="Exclude commits reachable from this revision"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON"),
):
    """List commits reachable from HEAD but not from the excluded revision."""
    try:
        commits = _engine().get_commit_history(path, limit=limit, exclude_revision=exclude)
    except DiffwatchError as e:
        console.print(f"[red]Failed to read history:[/red] {e}")
        raise typer.Exit(code=1)

    if json_output:
        typer.echo("[" + ",".join(c.model_dump_json() for c in commits) + "]")
        return

    if not commits:
        console.print("[dim]No commits unique to this branch[/dim]")
        return

    table = Table(title="Branch history")
    table.add_column("Commit", style="yellow")
    table.add_column("Date")
    table.add_column("Author")
    table.add_column("Message")
    table.add_column("+/-", justify="right")
    for commit in commits:
        subject = commit.message.splitlines()[0] if commit.message else ""
        table.add_row(
            commit.revision_id[:10],
            commit.authored_at.strftime("%Y-%m-%d %H:%M"),
            commit.author,
            subject,
            f"[green]+{commit.stats.additions}[/green] [red]-{commit.stats.deletions}[/red]",
        )
    console.print(table)
