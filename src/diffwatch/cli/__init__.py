"""CLI package for diffwatch."""

import typer

from diffwatch.cli import diff_cmd, watch_cmd
from diffwatch.config import get_settings
from diffwatch.logging_setup import setup_logging_from_config

app = typer.Typer(
    name="diffwatch",
    help="Inspect git working-tree diffs and watch for changes",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Configure logging before any command runs."""
    config = get_settings().logging
    if verbose:
        config = config.model_copy(update={"level": "DEBUG"})
    setup_logging_from_config(config)


app.command(name="diff", help="Show uncommitted changes of a working tree")(diff_cmd.working_tree)
app.command(name="range", help="Show changes between two revisions")(diff_cmd.revision_range)
app.command(name="show", help="Show the changes introduced by one commit")(diff_cmd.show)
app.command(name="log", help="List commits unique to the current branch")(diff_cmd.log)
app.command(name="watch", help="Watch a working tree and report when it needs a refresh")(watch_cmd.watch)


@app.command()
def version():
    """Show version information."""
    from diffwatch import __version__
    typer.echo(f"diffwatch {__version__}")


if __name__ == "__main__":
    app()
