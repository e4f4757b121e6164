"""
CLI commands for managing the decompressed-shard cache and temp artifacts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from dsinspect.cli.utils import load_config

app = typer.Typer(help="Manage the decompressed-shard cache and temp files")
console = Console()


def _stores(config: Optional[str]):
    from dsinspect.data.chunk_cache import get_cache
    from dsinspect.data.temp_files import TempFileStore

    cfg = load_config(config)
    temp_cfg = cfg.get("temp_files") or {}
    root = temp_cfg.get("root")
    store = TempFileStore(
        Path(root).expanduser() if root else None,
        max_age_hours=float(temp_cfg.get("max_age_hours", 24.0)),
    )
    return get_cache(cfg.get("chunk_cache") or {}), store


@app.command()
def stats(config: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml")):
    """Show cache statistics."""
    try:
        cache, store = _stores(config)
        cache_stats = cache.get_cache_stats()
        temp_stats = store.stats()

        print("\n[bold cyan]Decompressed Shard Cache[/bold cyan]")
        print(f"  Cache Directory: {cache_stats['cache_dir']}")
        print(f"  Entries: {cache_stats['entries']}")
        print(f"  Cache Size: {cache_stats['size_limit_status']}")

        table = Table(show_header=True, header_style="bold magenta", title="Temp Artifacts")
        table.add_column("Root", style="cyan")
        table.add_column("Files", justify="right", style="green")
        table.add_column("Size (MB)", justify="right")
        size_mb = int(temp_stats["size_bytes"]) / (1024 * 1024)
        table.add_row(str(temp_stats["root"]), str(temp_stats["files"]), f"{size_mb:.1f}")
        console.print(table)
    except OSError as e:
        print(f"[red]Error getting cache stats: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def clear(
    source: Optional[str] = typer.Argument(None, help="Only clear entries decompressed from paths under this prefix"),
    temp: bool = typer.Option(True, "--temp/--no-temp", help="Also remove stale temp artifacts"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml"),
):
    """Clear decompressed shards (all, or those under a path prefix)."""
    try:
        cache, store = _stores(config)
        prefix = str(Path(source).expanduser().resolve()) if source else None
        removed = cache.clear(prefix)
        scope = f" under {source}" if source else ""
        print(f"✓ Cleared {removed} decompressed shard(s){scope}")
        if temp:
            store.max_age_hours = 0.0
            print(f"✓ Removed {store.cleanup_stale()} temp artifact(s)")
    except OSError as e:
        print(f"[red]Error clearing cache: {e}[/red]")
        raise typer.Exit(code=1)
