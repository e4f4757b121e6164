"""
Tests for the hosted catalog client and adapter (datasets-server API).
"""

import asyncio
import shutil
import tempfile
from pathlib import Path

import httpx
import pytest

DATASET_URL = "https://huggingface.co/datasets/acme/speech"
JPEG = b"\xff\xd8\xff\xe0" + b"\x10" * 32


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    if temp_dir.exists():
        shutil.rmtree(temp_dir)


class CatalogStub:
    """Minimal datasets-server: splits, rows and one image asset."""

    def __init__(self, total=250):
        self.total = total
        self.requests = []

    def handle(self, request):
        self.requests.append(request)
        path = request.url.path
        params = request.url.params
        if path == "/splits":
            return httpx.Response(
                200,
                json={
                    "splits": [
                        {"dataset": params["dataset"], "config": "default", "split": "test"},
                        {"dataset": params["dataset"], "config": "default", "split": "train"},
                        {"dataset": params["dataset"], "config": "clean", "split": "validation"},
                    ],
                    "pending": [],
                    "failed": [],
                },
            )
        if path == "/rows":
            offset, length = int(params["offset"]), int(params["length"])
            rows = [
                {
                    "row_idx": i,
                    "row": {
                        "text": f"utterance {i}",
                        "label": i % 2,
                        "image": {"src": f"https://datasets-server.huggingface.co/assets/acme/speech/{i}.jpg", "height": 4, "width": 4},
                    },
                    "truncated_cells": [],
                }
                for i in range(offset, min(self.total, offset + length))
            ]
            return httpx.Response(
                200,
                json={
                    "features": [
                        {"feature_idx": 0, "name": "text", "type": {"dtype": "string", "_type": "Value"}},
                        {"feature_idx": 1, "name": "label", "type": {"names": ["a", "b"], "_type": "ClassLabel"}},
                        {"feature_idx": 2, "name": "image", "type": {"_type": "Image"}},
                    ],
                    "rows": rows,
                    "num_rows_total": self.total,
                    "num_rows_per_page": 100,
                    "partial": False,
                },
            )
        if path.startswith("/assets/"):
            return httpx.Response(200, content=JPEG, headers={"content-type": "image/jpeg"})
        return httpx.Response(404, json={"error": "Not found."})


def _engine(temp_dir, stub):
    from dsinspect.data.chunk_cache import ChunkCache
    from dsinspect.data.engine import Engine
    from dsinspect.data.temp_files import TempFileStore

    return Engine(
        chunk_cache=ChunkCache(cache_dir=temp_dir / "cache"),
        temp_store=TempFileStore(temp_dir / "tmp"),
        catalog_transport=httpx.MockTransport(stub.handle),
    )


def test_parse_repo_id():
    """Dataset page URLs and hf:// URIs resolve to a repository id."""
    from dsinspect.data.adapters.catalog import parse_repo_id

    assert parse_repo_id("https://huggingface.co/datasets/acme/speech") == ("acme/speech", None)
    assert parse_repo_id("https://huggingface.co/datasets/acme/speech/viewer/default/train") == ("acme/speech", None)
    assert parse_repo_id("https://hf.co/datasets/squad") == ("squad", None)
    assert parse_repo_id("https://huggingface.co/datasets/squad/tree/main") == ("squad", None)
    assert parse_repo_id("hf://datasets/acme/speech@v2/data") == ("acme/speech", "v2")
    assert parse_repo_id("https://huggingface.co/acme/model") is None
    assert parse_repo_id("https://huggingface.co/datasets/acme/sp%20eech") is None
    assert parse_repo_id("https://example.org/datasets/acme/speech") is None


def test_pick_default_split():
    """``train`` wins, then anything starting with it, then the first split."""
    from dsinspect.data.adapters.catalog import pick_default_split

    assert pick_default_split(["test", "train"]) == "train"
    assert pick_default_split(["test", "train_clean"]) == "train_clean"
    assert pick_default_split(["validation", "test"]) == "validation"
    assert pick_default_split([]) is None


def test_error_classification():
    """Script-only datasets, auth failures and missing datasets are told apart."""
    from dsinspect.data.catalog_client import CatalogClient
    from dsinspect.errors import AuthenticationRequired, InvalidRequest, NetworkError, NotFound, UnsupportedFeature

    anonymous = CatalogClient()
    signed_in = CatalogClient(credential="hf_x")

    script = anonymous.classify_error(
        501, None, "The dataset viewer doesn't support this dataset because it runs arbitrary Python code.", "u"
    )
    assert isinstance(script, UnsupportedFeature)
    assert isinstance(anonymous.classify_error(500, "DatasetWithScriptNotSupportedError", "", "u"), UnsupportedFeature)
    assert isinstance(anonymous.classify_error(401, None, "", "u"), AuthenticationRequired)
    assert isinstance(anonymous.classify_error(404, None, "The dataset is gated.", "u"), AuthenticationRequired)
    assert isinstance(signed_in.classify_error(404, None, "The dataset is gated.", "u"), NotFound)
    assert isinstance(anonymous.classify_error(404, None, "Not found.", "u"), NotFound)
    assert isinstance(anonymous.classify_error(422, None, "length must be positive", "u"), InvalidRequest)
    server = anonymous.classify_error(503, None, "", "u")
    assert isinstance(server, NetworkError) and server.status == 503


def test_client_maps_http_failures():
    """Error responses from the service raise typed errors."""
    from dsinspect.data.catalog_client import CatalogClient
    from dsinspect.errors import AuthenticationRequired, RequestTimeout, UnsupportedFeature

    def handler(request):
        dataset = request.url.params.get("dataset")
        if dataset == "acme/script":
            return httpx.Response(
                501,
                headers={"x-error-code": "DatasetWithScriptNotSupportedError"},
                json={"error": "The dataset viewer doesn't support this dataset."},
            )
        if dataset == "acme/private":
            return httpx.Response(401, json={"error": "Unauthorized"})
        raise httpx.ReadTimeout("slow", request=request)

    async def run():
        client = CatalogClient(transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(UnsupportedFeature):
                await client.splits("acme/script")
            with pytest.raises(AuthenticationRequired):
                await client.splits("acme/private")
            with pytest.raises(RequestTimeout):
                await client.splits("acme/slow")
            return client.requests
        finally:
            await client.close()

    assert asyncio.run(run()) == 3


def test_asset_hosts_are_allow_listed():
    """Assets are only fetched over https from the catalog's own hosts."""
    from dsinspect.data.catalog_client import CatalogClient, is_allowed_asset_host
    from dsinspect.errors import InvalidRequest

    assert is_allowed_asset_host("https://datasets-server.huggingface.co/assets/a.jpg")
    assert is_allowed_asset_host("https://cdn-lfs-us-1.hf.co/repos/x")
    assert not is_allowed_asset_host("http://huggingface.co/a.jpg")
    assert not is_allowed_asset_host("https://huggingface.co.evil.example/a.jpg")

    async def run():
        client = CatalogClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        try:
            with pytest.raises(InvalidRequest):
                await client.fetch_asset("https://evil.example/a.jpg", max_bytes=100)
            return client.requests
        finally:
            await client.close()

    assert asyncio.run(run()) == 0


def test_configs_and_rows(temp_dir):
    """Configs list their default split first and row pages are capped."""
    stub = CatalogStub()

    async def run():
        engine = _engine(temp_dir, stub)
        try:
            source = (await engine.load(DATASET_URL)).value
            configs = (await engine.catalog_configs(source)).value
            page = (await engine.list_catalog_rows(source, offset=10, length=500)).value
            tail = (await engine.list_catalog_rows(source, "default", "train", 240, 50)).value
            past = (await engine.list_catalog_rows(source, "default", "train", 300, 5)).value
            return configs, page, tail, past
        finally:
            await engine.close()

    configs, page, tail, past = asyncio.run(run())

    assert configs == {"default": ["train", "test"], "clean": ["validation"]}
    assert page.length == 100
    assert len(page.rows) == 100
    assert page.rows[0]["text"] == "utterance 10"
    assert [f.name for f in page.schema] == ["text", "label", "image"]
    assert page.schema[0].dtype == "string"
    assert page.total == 250 and not page.partial
    assert len(tail.rows) == 10
    assert past.rows == [] and past.total == 250

    rows_requests = [r for r in stub.requests if r.url.path == "/rows"]
    assert rows_requests[0].url.params["length"] == "100"
    assert rows_requests[0].url.params["split"] == "train"
    # the page past the known total never reaches the service
    assert len(rows_requests) == 2


def test_cells_preview_as_fields(temp_dir):
    """Strings preview as text, values as JSON and media cells as downloaded assets."""
    stub = CatalogStub()

    async def run():
        engine = _engine(temp_dir, stub)
        try:
            source = (await engine.load(DATASET_URL)).value
            items = (await engine.list_items_page(source, "default/train", 0, 5)).value
            text = (await engine.peek_field(source, "default/train", 3, "text")).value
            label = (await engine.peek_field(source, "default/train", 3, 1)).value
            image = (await engine.peek_field(source, "default/train", 3, "image")).value
            saved = (await engine.materialize_field(source, "default/train", 3, "image")).value
            return items, text, label, image, saved
        finally:
            await engine.close()

    items, text, label, image, saved = asyncio.run(run())

    assert [f.name for f in items.items[0].fields] == ["text", "label", "image"]
    assert items.total == 250
    assert text.text == "utterance 3"
    assert text.guessed_ext == "txt"
    assert label.text == "1"
    assert label.guessed_ext == "json"
    assert image.guessed_ext == "jpg"
    assert image.size == len(JPEG)
    assert saved.ext == "jpg"
    assert Path(saved.path).name.startswith("acme__speech-default-train-i3-f2")
    assert items.items[0].key == "0"


def test_credential_is_sent_as_bearer(temp_dir):
    """A session credential reaches every catalog request."""
    stub = CatalogStub()

    async def run():
        engine = _engine(temp_dir, stub)
        try:
            source = (await engine.load("hf://datasets/acme/speech", credential="hf_secret")).value
            await engine.load_manifest(source)
            await engine.list_catalog_rows(source, "default", "train", 0, 2)
            await engine.peek_field(source, "default/train", 0, "image")
        finally:
            await engine.close()

    asyncio.run(run())
    assert len(stub.requests) == 3
    assert all(r.headers.get("authorization") == "Bearer hf_secret" for r in stub.requests)


def test_catalog_rejects_full_listing(temp_dir):
    """Catalog splits can only be listed page by page."""
    from dsinspect.errors import InvalidRequest

    stub = CatalogStub()

    async def run():
        engine = _engine(temp_dir, stub)
        try:
            source = (await engine.load(DATASET_URL)).value
            with pytest.raises(InvalidRequest):
                await engine.list_items(source, "default/train")
        finally:
            await engine.close()

    asyncio.run(run())
