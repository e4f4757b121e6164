from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, List, Optional

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from dsinspect.cli.utils import load_config
from dsinspect.errors import InspectorError

console = Console()


def _field_key(value: str):
    return int(value) if value.isdigit() else value


def _shard_key(value: str):
    return int(value) if value.isdigit() else value


def _run(config: Optional[str], body: Callable[[Any], Awaitable[None]]) -> None:
    """Run ``body(engine)`` on a fresh engine; engine errors exit with code 1."""
    from dsinspect.data.engine import Engine

    async def _main() -> None:
        engine = Engine.from_config(load_config(config))
        try:
            await body(engine)
        finally:
            await engine.close()

    try:
        asyncio.run(_main())
    except InspectorError as e:
        print(f"[red]Error ({e.code}): {e}[/red]")
        raise typer.Exit(code=1)


def _size(value: Optional[int]) -> str:
    return "?" if value is None else f"{value:,}"


def detect(
    location: str = typer.Argument(..., help="Path or URL of a dataset"),
):
    """Show which adapter handles a path or URL."""
    from dsinspect.data.router import detect_source

    try:
        source = detect_source(location)
    except InspectorError as e:
        print(f"[red]Error ({e.code}): {e}[/red]")
        raise typer.Exit(code=1)
    print(f"[bold cyan]{source.kind.value}[/bold cyan]  {source.location}")
    for path in source.paths[:20]:
        print(f"  {path}")
    if len(source.paths) > 20:
        print(f"  [dim]... {len(source.paths) - 20} more[/dim]")


def shards(
    location: str = typer.Argument(..., help="Path or URL of a dataset"),
    token: Optional[str] = typer.Option(None, "--token", help="Bearer credential for catalog sources"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml"),
):
    """List the shards of a dataset."""

    async def body(engine) -> None:
        source = (await engine.load(location, credential=token)).value
        listed = (await engine.load_manifest(source)).value
        table = Table(show_header=True, header_style="bold magenta", title=f"{source.kind.value}: {location}")
        table.add_column("#", justify="right")
        table.add_column("Shard", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("Items", justify="right", style="green")
        table.add_column("Item bytes", justify="right")
        table.add_column("Status")
        for i, shard in enumerate(listed):
            status = "ok" if shard.exists else "[red]missing[/red]"
            if shard.compression:
                status += f" ({shard.compression})"
            table.add_row(str(i), shard.filename, _size(shard.size), _size(shard.item_count), _size(shard.item_bytes), status)
        console.print(table)

    _run(config, body)


def items(
    location: str = typer.Argument(..., help="Path or URL of a dataset"),
    shard: str = typer.Argument("0", help="Shard name or index"),
    offset: int = typer.Option(0, "--offset", help="First item"),
    length: int = typer.Option(25, "--length", help="Items per page"),
    compute_total: bool = typer.Option(False, "--compute-total", help="Scan to the end to report the total"),
    token: Optional[str] = typer.Option(None, "--token", help="Bearer credential for catalog sources"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml"),
):
    """List one page of items in a shard."""

    async def body(engine) -> None:
        source = (await engine.load(location, credential=token)).value
        page = (
            await engine.list_items_page(source, _shard_key(shard), offset, length, compute_total=compute_total)
        ).value
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Item", justify="right")
        table.add_column("Key", style="cyan")
        table.add_column("Bytes", justify="right")
        table.add_column("Fields")
        for item in page.items:
            names = ", ".join(f"{f.name or f.index}:{f.size}" for f in item.fields)
            table.add_row(str(item.index), item.key or "", _size(item.total_bytes), names)
        console.print(table)
        if page.total is not None:
            print(f"  {len(page.items)} item(s) from {page.offset}; total {page.total}")
        else:
            print(f"  {len(page.items)} item(s) from {page.offset}; at least {page.known_count} so far")

    _run(config, body)


def peek(
    location: str = typer.Argument(..., help="Path or URL of a dataset"),
    shard: str = typer.Argument(..., help="Shard name or index"),
    item: int = typer.Argument(..., help="Item index"),
    field: str = typer.Argument("0", help="Field name or index"),
    token: Optional[str] = typer.Option(None, "--token", help="Bearer credential for catalog sources"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml"),
):
    """Preview a field as text or a hex snippet."""

    async def body(engine) -> None:
        source = (await engine.load(location, credential=token)).value
        preview = (await engine.peek_field(source, _shard_key(shard), item, _field_key(field))).value
        kind = "binary" if preview.is_binary else "text"
        print(f"[bold cyan]{preview.size:,} bytes[/bold cyan]  {kind}  ext={preview.guessed_ext}")
        if preview.text is not None:
            console.print(preview.text, markup=False, highlight=False)
        else:
            print(f"  {preview.hex_snippet}")

    _run(config, body)


def materialize(
    location: str = typer.Argument(..., help="Path or URL of a dataset"),
    shard: str = typer.Argument(..., help="Shard name or index"),
    item: int = typer.Argument(..., help="Item index"),
    field: str = typer.Argument("0", help="Field name or index"),
    audio: bool = typer.Option(False, "--audio", help="Decode to a playable audio file (SPHERE -> WAV)"),
    open_file: bool = typer.Option(False, "--open", help="Open the file with the default application"),
    app_cmd: Optional[str] = typer.Option(None, "--app", help="Application command to open the file with"),
    token: Optional[str] = typer.Option(None, "--token", help="Bearer credential for catalog sources"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml"),
):
    """Write a field to a temp file and print its path."""

    async def body(engine) -> None:
        from dsinspect.cli.open_with import open_path

        source = (await engine.load(location, credential=token)).value
        op = engine.prepare_audio_preview if audio else engine.materialize_field
        result = (await op(source, _shard_key(shard), item, _field_key(field))).value
        # keep the file past engine shutdown; temp cleanup removes it later
        engine.temp_store.adopt(result.path, 0)
        decoded = f" (decoded from {result.decoded_from})" if result.decoded_from else ""
        print(f"✓ {result.path}  {result.size:,} bytes  .{result.ext}{decoded}")
        if open_file or app_cmd:
            open_path(result.path, app_cmd)

    _run(config, body)


def rows(
    location: str = typer.Argument(..., help="Catalog dataset URL"),
    dataset_config: Optional[str] = typer.Option(None, "--config-name", help="Dataset configuration"),
    split: Optional[str] = typer.Option(None, "--split", help="Split name"),
    offset: int = typer.Option(0, "--offset", help="First row"),
    length: int = typer.Option(25, "--length", help="Rows to fetch (capped by the service)"),
    token: Optional[str] = typer.Option(None, "--token", help="Bearer credential"),
    as_json: bool = typer.Option(False, "--json", help="Print rows as JSON lines"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml"),
):
    """Show one page of rows from a hosted catalog dataset."""

    async def body(engine) -> None:
        source = (await engine.load(location, credential=token)).value
        page = (await engine.list_catalog_rows(source, dataset_config, split, offset, length)).value
        if as_json:
            for row in page.rows:
                typer.echo(json.dumps(row, ensure_ascii=False, default=str))
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right")
        for feature in page.schema:
            table.add_column(f"{feature.name}\n[dim]{feature.dtype}[/dim]")
        for i, row in enumerate(page.rows):
            cells: List[str] = []
            for feature in page.schema:
                value = row.get(feature.name)
                text = value if isinstance(value, str) else json.dumps(value, default=str)
                cells.append(text[:80])
            table.add_row(str(page.offset + i), *cells)
        console.print(table)
        total = "?" if page.total is None else f"{page.total:,}"
        partial = " (partial)" if page.partial else ""
        print(f"  rows {page.offset}-{page.offset + len(page.rows)} of {total}{partial}")

    _run(config, body)


def record(
    location: str = typer.Argument(..., help="Record URL"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml"),
):
    """Show a remote record's metadata and files."""

    async def body(engine) -> None:
        source = (await engine.load(location)).value
        summary = (await engine.record_summary(source)).value
        print(f"[bold cyan]{summary.title or summary.record_id}[/bold cyan]")
        for label, value in (
            ("DOI", summary.doi),
            ("Published", summary.publication_date),
            ("Version", summary.version),
            ("Access", summary.access_right),
            ("Creators", ", ".join(summary.creators)),
        ):
            if value:
                print(f"  {label}: {value}")
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("File", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("Checksum")
        for f in summary.files:
            table.add_row(f.name, _size(f.size), f.checksum or "")
        console.print(table)

    _run(config, body)


def entries(
    location: str = typer.Argument(..., help="Record URL"),
    shard: str = typer.Argument("0", help="File name or index"),
    offset: int = typer.Option(0, "--offset", help="First entry"),
    length: int = typer.Option(25, "--length", help="Entries to list"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml"),
):
    """List the entries of a remote ZIP or TAR file."""

    async def body(engine) -> None:
        source = (await engine.load(location)).value
        listed, total = (await engine.list_archive_entries(source, _shard_key(shard), offset, length)).value
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Entry", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("Stored", justify="right")
        table.add_column("Method")
        for entry in listed:
            name = entry.name + ("/" if entry.is_dir and not entry.name.endswith("/") else "")
            table.add_row(name, _size(entry.uncompressed_size), _size(entry.compressed_size), entry.method)
        console.print(table)
        print(f"  {len(listed)} entr(ies); total {'?' if total is None else total}")

    _run(config, body)


def register(app: typer.Typer) -> None:
    app.command("detect")(detect)
    app.command("shards")(shards)
    app.command("items")(items)
    app.command("peek")(peek)
    app.command("materialize")(materialize)
    app.command("rows")(rows)
    app.command("record")(record)
    app.command("entries")(entries)
