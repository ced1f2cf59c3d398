"""Watch command: report needs-refresh events for one working tree."""

import asyncio
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console

from diffwatch.config import get_settings
from diffwatch.core.worktree_watcher import WorktreeWatcher
from diffwatch.logging_setup import get_logger

console = Console()


async def _watch_forever(path: Path, session_id: str, settings, stop: asyncio.Event | None = None) -> None:
    watcher = WorktreeWatcher(settings=settings)
    log = get_logger(__name__, session_id=session_id)

    def on_refresh(changed_session: str) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        console.print(f"[cyan]{stamp}[/cyan] {changed_session}: working tree changed")

    watcher.subscribe(on_refresh)
    if not watcher.start_watching(session_id, path):
        raise RuntimeError(f"Could not watch {path}")
    log.debug(f"Watch loop running for {path}")

    stop = stop or asyncio.Event()
    try:
        await stop.wait()
    finally:
        watcher.stop_all()
        await watcher.wait_for_checks()


def watch(
    path: Path = typer.Argument(Path("."), help="Working tree path"),
    session_id: str = typer.Option("default", "--session", "-s", help="Session id reported in events"),
    debounce: float | None = typer.Option(None, "--debounce", min=0.05, max=1.5, help="Debounce window in seconds"),
    polling: bool = typer.Option(False, "--polling", help="Use the polling observer"),
):
    """Watch a working tree until interrupted."""
    settings = get_settings()
    watcher_config = settings.watcher.model_copy(update={
        "debounce_seconds": debounce if debounce is not None else settings.watcher.debounce_seconds,
        "force_polling": polling or settings.watcher.force_polling,
        "enabled": True,
    })
    settings = settings.model_copy(update={"watcher": watcher_config})

    if not path.is_dir():
        console.print(f"[red]Not a directory:[/red] {path}")
        raise typer.Exit(code=1)

    console.print(f"[green]Watching[/green] {path.resolve()} [dim](Ctrl+C to stop)[/dim]")
    try:
        asyncio.run(_watch_forever(path, session_id, settings))
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")
    except RuntimeError as e:
        console.print(f"[red]Watch failed:[/red] {e}")
        raise typer.Exit(code=1)
