"""Byte-range reads over local files and partial-content HTTP resources.

Every remote adapter depends on servers honouring ``Range`` requests, so the
first ranged response from a resource is checked for ``206`` plus a
``Content-Range`` header. A server that answers ``200`` with the whole body
fails fast with :class:`RangeUnsupported`; the body is never read.

There are no retries here. A timeout or transport failure surfaces to the
caller as-is so remote read counts stay predictable.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import httpx

from ..errors import (
    AuthenticationRequired,
    InvalidRequest,
    MalformedFormat,
    NetworkError,
    NotFound,
    RangeUnsupported,
    RequestTimeout,
)

logger = logging.getLogger(__name__)

_CONTENT_RANGE_RE = re.compile(r"^\s*bytes\s+(\d+)-(\d+)/(\d+|\*)\s*$", re.IGNORECASE)

DEFAULT_USER_AGENT = "dataset-inspector/0.3"


def is_remote(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def parse_content_range(value: Optional[str]) -> Optional[Tuple[int, int, Optional[int]]]:
    """Parse ``bytes start-end/total``; ``total`` is None for ``*``."""
    if not value:
        return None
    match = _CONTENT_RANGE_RE.match(value)
    if not match:
        return None
    start, end, total = match.groups()
    return int(start), int(end), (None if total == "*" else int(total))


def translate_http_status(response: httpx.Response, url: str) -> None:
    """Raise the engine error matching a non-success status."""
    status = response.status_code
    if status == 404 or status == 410:
        raise NotFound("Remote resource not found", context={"url": url, "status": status})
    if status in (401, 403):
        raise AuthenticationRequired(
            "Remote resource requires authentication", context={"url": url, "status": status}
        )
    raise NetworkError(
        f"Unexpected HTTP status {status}", kind="http", status=status, context={"url": url}
    )


class ByteRangeFetcher:
    """``read``/``size``/``supports_range`` for paths and URLs.

    Local paths use positioned reads. URLs use a shared ``httpx.Client`` with a
    bounded timeout; per-URL sizes and range verification are remembered for
    the lifetime of the fetcher.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.BaseTransport] = None,
        credential: Optional[str] = None,
    ) -> None:
        self._timeout = timeout
        self._user_agent = user_agent
        self._transport = transport
        self._credential = credential
        self._client: Optional[httpx.Client] = None
        self._lock = threading.Lock()
        self._sizes: Dict[str, int] = {}
        self._verified: Dict[str, bool] = {}
        self.remote_reads = 0

    def _ensure_client(self) -> httpx.Client:
        if self._client is None:
            with self._lock:
                if self._client is None:
                    timeout = httpx.Timeout(self._timeout, connect=min(10.0, self._timeout))
                    limits = httpx.Limits(max_connections=8, max_keepalive_connections=4)
                    headers = {"User-Agent": self._user_agent}
                    kwargs: Dict[str, Any] = {
                        "timeout": timeout,
                        "limits": limits,
                        "headers": headers,
                        "follow_redirects": True,
                    }
                    if self._transport is not None:
                        kwargs["transport"] = self._transport
                    self._client = httpx.Client(**kwargs)
        return self._client

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = dict(extra or {})
        if self._credential:
            headers["Authorization"] = f"Bearer {self._credential}"
        return headers

    # -- public contract -------------------------------------------------

    def read(self, location: str, offset: int, length: int) -> bytes:
        """Read up to ``length`` bytes at ``offset``; shorter at end of data."""
        if offset < 0 or length < 0:
            raise InvalidRequest(
                "Negative range requested", context={"offset": offset, "length": length}
            )
        if length == 0:
            return b""
        if is_remote(location):
            _, data = self._ranged_get(location, f"bytes={offset}-{offset + length - 1}")
            return data
        return self._read_local(location, offset, length)

    def read_exact(self, location: str, offset: int, length: int, *, what: str = "range") -> bytes:
        data = self.read(location, offset, length)
        if len(data) != length:
            raise MalformedFormat(
                f"Truncated {what}",
                context={
                    "location": _short(location),
                    "offset": offset,
                    "expected": length,
                    "got": len(data),
                },
            )
        return data

    def read_tail(self, location: str, length: int) -> Tuple[int, bytes]:
        """Read the last ``length`` bytes; returns ``(start_offset, data)``.

        Remote resources use a suffix range so the tail costs one request even
        when the size is not yet known.
        """
        if is_remote(location):
            start, data = self._ranged_get(location, f"bytes=-{length}")
            return start, data
        total = self.size(location)
        start = max(0, total - length)
        return start, self._read_local(location, start, total - start)

    def size(self, location: str) -> int:
        if not is_remote(location):
            try:
                return os.path.getsize(location)
            except FileNotFoundError as exc:
                raise NotFound("File not found", context={"path": location}) from exc
        known = self._sizes.get(location)
        if known is not None:
            return known
        self._ranged_get(location, "bytes=0-0")
        known = self._sizes.get(location)
        if known is None:
            raise RangeUnsupported(
                "Server did not report the resource size", context={"url": location}
            )
        return known

    def supports_range(self, location: str) -> bool:
        if not is_remote(location):
            return True
        if location not in self._verified:
            try:
                self.size(location)
            except RangeUnsupported:
                return False
        return self._verified.get(location, False)

    def get_json(self, url: str) -> Any:
        """Plain GET returning decoded JSON, used for record metadata."""
        client = self._ensure_client()
        logger.debug("GET %s", url)
        try:
            response = client.get(url, headers=self._headers({"Accept": "application/json"}))
        except httpx.TimeoutException as exc:
            raise RequestTimeout("Request timed out", context={"url": url}) from exc
        except httpx.TransportError as exc:
            raise NetworkError(str(exc) or "Transport error", context={"url": url}) from exc
        if response.status_code >= 400:
            translate_http_status(response, url)
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedFormat("Response is not valid JSON", context={"url": url}) from exc

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    # -- internals -------------------------------------------------------

    def _read_local(self, path: str, offset: int, length: int) -> bytes:
        try:
            with open(path, "rb") as fh:
                fh.seek(offset)
                return fh.read(length)
        except FileNotFoundError as exc:
            raise NotFound("File not found", context={"path": path}) from exc
        except IsADirectoryError as exc:
            raise InvalidRequest("Path is a directory", context={"path": path}) from exc

    def _ranged_get(self, url: str, range_header: str) -> Tuple[int, bytes]:
        client = self._ensure_client()
        self.remote_reads += 1
        logger.debug("Ranged GET %s [%s]", url, range_header)
        try:
            with client.stream("GET", url, headers=self._headers({"Range": range_header})) as response:
                status = response.status_code
                if status == 416:
                    # range starts past the end; servers answer "bytes */total"
                    match = re.search(r"/(\d+)", response.headers.get("Content-Range", ""))
                    if match:
                        self._sizes[url] = int(match.group(1))
                    return self._sizes.get(url, 0), b""
                if status == 200:
                    self._verified[url] = False
                    raise RangeUnsupported(
                        "Server ignored the Range header", context={"url": url}
                    )
                if status != 206:
                    translate_http_status(response, url)
                parsed = parse_content_range(response.headers.get("Content-Range"))
                if parsed is None:
                    self._verified[url] = False
                    raise RangeUnsupported(
                        "Partial response without a usable Content-Range",
                        context={"url": url},
                    )
                start, end, total = parsed
                self._verified[url] = True
                if total is not None:
                    self._sizes[url] = total
                data = response.read()
        except httpx.TimeoutException as exc:
            raise RequestTimeout("Ranged read timed out", context={"url": url}) from exc
        except httpx.TransportError as exc:
            raise NetworkError(str(exc) or "Transport error", context={"url": url}) from exc
        expected = end - start + 1
        if len(data) > expected:
            data = data[:expected]
        return start, data


def local_identity(path: str | Path) -> Tuple[str, int, int]:
    """``(path, size, mtime_ns)`` identity used to key shard caches."""
    st = os.stat(path)
    return str(Path(path).resolve()), st.st_size, st.st_mtime_ns


def _short(location: str) -> str:
    return location if is_remote(location) else os.path.basename(location)


__all__ = [
    "ByteRangeFetcher",
    "DEFAULT_USER_AGENT",
    "is_remote",
    "local_identity",
    "parse_content_range",
    "translate_http_status",
]
