from __future__ import annotations

import os
from typing import Optional

import typer

from dsinspect.cli import cache_cli, inspect_cli
from dsinspect.cli.utils import load_config, setup_logging

app = typer.Typer(help="Browse dataset shards, items and fields without loading whole datasets")


@app.callback(invoke_without_command=True)
def _root(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Set log level (DEBUG/INFO/WARNING/ERROR)"),
    log_stream: Optional[str] = typer.Option(None, "--log-stream", help="Console stream: stdout or stderr"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Path to log file"),
):
    if debug:
        os.environ["DSINSPECT_DEBUG"] = "1"
    eff_level = log_level or ("DEBUG" if debug else None)
    setup_logging(load_config(None), level=eff_level, stream=log_stream, logfile=log_file)
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


inspect_cli.register(app)
app.add_typer(cache_cli.app, name="cache")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
