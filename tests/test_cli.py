"""
Tests for the dsinspect command line, config loading and logging setup.
"""

import io
import logging
import shutil
import tempfile
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from dataset_builders import write_litdata

runner = CliRunner()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    if temp_dir.exists():
        shutil.rmtree(temp_dir)


@pytest.fixture
def cli_env(temp_dir, monkeypatch):
    """Point the CLI at a config whose cache and temp dirs live in temp_dir."""
    from dsinspect.data.chunk_cache import ChunkCache

    config = temp_dir / "config.yaml"
    config.write_text(
        yaml.safe_dump(
            {
                "chunk_cache": {"cache_dir": str(temp_dir / "cache")},
                "temp_files": {"root": str(temp_dir / "tmp")},
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("DSINSPECT_CONFIG", str(config))
    monkeypatch.setattr(ChunkCache, "_instance", None)
    return temp_dir


def _dataset(root, compression=None):
    name = "chunk-0-0.bin.zstd" if compression else "chunk-0-0.bin"
    items = [[f"clip {i}".encode("utf-8")] for i in range(3)]
    write_litdata(root, {name: items}, ["str"], compression=compression)
    return str(root)


def test_detect_shards_and_items(cli_env):
    """Read-only commands print the detected kind, shards and items."""
    from dsinspect.cli.dsinspect import app

    location = _dataset(cli_env / "lit")

    result = runner.invoke(app, ["detect", location])
    assert result.exit_code == 0
    assert "chunked-index" in result.output

    result = runner.invoke(app, ["shards", location])
    assert result.exit_code == 0
    assert "chunk-0-0.bin" in result.output

    result = runner.invoke(app, ["items", location, "0", "--length", "2"])
    assert result.exit_code == 0
    assert "total 3" in result.output


def test_peek_and_materialize(cli_env):
    """Peeking prints the field text; materializing leaves a file behind."""
    from dsinspect.cli.dsinspect import app

    location = _dataset(cli_env / "lit")

    result = runner.invoke(app, ["peek", location, "0", "1", "0"])
    assert result.exit_code == 0
    assert "clip 1" in result.output
    assert "ext=txt" in result.output

    result = runner.invoke(app, ["materialize", location, "chunk-0-0.bin", "2"])
    assert result.exit_code == 0
    written = list((cli_env / "tmp").glob("*.txt"))
    assert len(written) == 1
    assert written[0].read_bytes() == b"clip 2"


def test_engine_errors_exit_with_code(cli_env):
    """Engine failures print their code and exit non-zero."""
    from dsinspect.cli.dsinspect import app

    result = runner.invoke(app, ["peek", str(cli_env / "missing"), "0", "0"])
    assert result.exit_code == 1
    assert "not_found" in result.output

    result = runner.invoke(app, ["detect", str(cli_env / "missing")])
    assert result.exit_code == 1


def test_cache_stats_and_clear(cli_env):
    """The cache group reports and clears decompressed shards."""
    from dsinspect.cli.dsinspect import app

    location = _dataset(cli_env / "zst", compression="zstd")
    result = runner.invoke(app, ["peek", location, "0", "0"])
    assert result.exit_code == 0

    result = runner.invoke(app, ["cache", "stats"])
    assert result.exit_code == 0
    assert "Entries: 1" in result.output

    result = runner.invoke(app, ["cache", "clear"])
    assert result.exit_code == 0
    assert "Cleared 1 decompressed shard(s)" in result.output
    assert not list((cli_env / "cache").glob("*.bin"))


def test_open_path_launches_app(temp_dir, monkeypatch):
    """Files open with the given command line; missing files are refused."""
    from dsinspect.cli import open_with
    from dsinspect.errors import NotFound

    launched = []

    def fake_popen(cmd, **kwargs):
        launched.append(cmd)

    monkeypatch.setattr(open_with.subprocess, "Popen", fake_popen)
    target = temp_dir / "clip.wav"
    target.write_bytes(b"RIFF")

    open_with.open_path(target, "player --loop")
    assert launched == [["player", "--loop", str(target)]]

    with pytest.raises(NotFound):
        open_with.open_path(temp_dir / "gone.wav", "player")
    assert len(launched) == 1


def test_console_handler_strips_tracebacks():
    """Console records lose traceback text but keep it for other handlers."""
    from dsinspect.utils.logging_handlers import UTF8StreamHandler

    stream = io.StringIO()
    handler = UTF8StreamHandler(stream, include_tracebacks=False)
    log = logging.getLogger("dsinspect.test.console")
    log.addHandler(handler)
    log.propagate = False
    try:
        try:
            raise ValueError("bad chunk")
        except ValueError:
            log.exception("Read failed")
    finally:
        log.removeHandler(handler)

    output = stream.getvalue()
    assert "Read failed" in output
    assert "Traceback" not in output


def test_load_config_and_setup_logging(temp_dir, monkeypatch):
    """DSINSPECT_CONFIG selects the config file; log level overrides apply."""
    from dsinspect.cli.utils import load_config, setup_logging

    config = temp_dir / "c.yaml"
    config.write_text("engine:\n  max_page_size: 10\n", encoding="utf-8")
    monkeypatch.setenv("DSINSPECT_CONFIG", str(config))

    assert load_config(None) == {"engine": {"max_page_size": 10}}
    assert load_config(str(config))["engine"]["max_page_size"] == 10

    setup_logging({}, level="DEBUG", force=True)
    assert logging.getLogger("dsinspect").level == logging.DEBUG
    setup_logging({}, level="WARNING", force=True)
    assert logging.getLogger("dsinspect").level == logging.WARNING
