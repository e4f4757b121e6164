"""Async client for the hosted dataset preview API (datasets-server)."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional
from urllib.parse import urljoin, urlsplit

import httpx

from ..errors import (
    AuthenticationRequired,
    InspectorError,
    InvalidRequest,
    MalformedFormat,
    NetworkError,
    NotFound,
    RequestTimeout,
    UnsupportedFeature,
)
from .fetcher import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://datasets-server.huggingface.co/"

_ASSET_HOSTS = {"huggingface.co", "hf.co", "datasets-server.huggingface.co"}

# error codes the service uses for datasets that need a loading script
_SCRIPT_ERROR_CODES = {
    "DatasetWithScriptNotSupportedError",
    "DatasetModuleNotInstalledError",
    "DatasetScriptError",
}
_SCRIPT_MARKERS = ("dataset scripts", "loading script", "trust_remote_code", "arbitrary python code")
_AUTH_MARKERS = ("gated", "private", "authentication", "authenticate", "unauthorized", "access to dataset")


def is_allowed_asset_host(url: str) -> bool:
    parts = urlsplit(url)
    if parts.scheme != "https":
        return False
    host = (parts.hostname or "").lower()
    if host in _ASSET_HOSTS or host.endswith(".huggingface.co"):
        return True
    return host.startswith("cdn-lfs") and host.endswith(".hf.co")


class CatalogClient:
    """Shared ``httpx.AsyncClient`` for one session's catalog requests.

    The bearer credential given at construction is attached to every request,
    asset downloads included.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        credential: Optional[str] = None,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.credential = credential
        self._timeout = timeout
        self._user_agent = user_agent
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = threading.Lock()
        self.requests = 0

    @staticmethod
    def _extract_error(response: httpx.Response) -> tuple[Optional[str], str]:
        code = response.headers.get("x-error-code")
        message = ""
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            code = code or payload.get("error_code") or payload.get("errorCode")
            message = str(payload.get("error") or payload.get("message") or "")
        return code, message

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            with self._lock:
                if self._client is None:
                    timeout = httpx.Timeout(self._timeout, connect=min(10.0, self._timeout))
                    limits = httpx.Limits(max_connections=8, max_keepalive_connections=4)
                    headers = {"User-Agent": self._user_agent}
                    if self.credential:
                        headers["Authorization"] = f"Bearer {self.credential}"
                    kwargs: Dict[str, Any] = {
                        "timeout": timeout,
                        "limits": limits,
                        "headers": headers,
                        "follow_redirects": True,
                    }
                    if self._transport is not None:
                        kwargs["transport"] = self._transport
                    self._client = httpx.AsyncClient(**kwargs)
        return self._client

    def classify_error(self, status: int, code: Optional[str], message: str, url: str) -> InspectorError:
        """Map a failed catalog response to an engine error."""
        context: Dict[str, Any] = {"url": url, "status": status}
        if code:
            context["error_code"] = code
        lowered = message.lower()
        if (code and code in _SCRIPT_ERROR_CODES) or any(m in lowered for m in _SCRIPT_MARKERS):
            return UnsupportedFeature(
                "Dataset requires executing its own loading code", context=context
            )
        if status in (401, 403):
            return AuthenticationRequired("Dataset requires authentication", context=context)
        if status == 404:
            # gated and private datasets look like 404s to anonymous callers
            if not self.credential and any(m in lowered for m in _AUTH_MARKERS):
                return AuthenticationRequired("Dataset requires authentication", context=context)
            return NotFound(message or "Dataset, config or split not found", context=context)
        if status == 422 or status == 400:
            return InvalidRequest(message or "Rejected request", context=context)
        return NetworkError(message or f"Unexpected HTTP status {status}", kind="http", status=status, context=context)

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        client = self._ensure_client()
        self.requests += 1
        logger.debug("GET %s %s", url, params or "")
        try:
            return await client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise RequestTimeout("Catalog request timed out", context={"url": url}) from exc
        except httpx.TransportError as exc:
            raise NetworkError(str(exc) or "Transport error", context={"url": url}) from exc

    async def fetch_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = urljoin(self.base_url, path)
        response = await self._get(url, params)
        if response.status_code >= 400:
            code, message = self._extract_error(response)
            raise self.classify_error(response.status_code, code, message, url)
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedFormat("Catalog response is not valid JSON", context={"url": url}) from exc
        if not isinstance(payload, dict):
            raise MalformedFormat("Catalog response is not an object", context={"url": url})
        if payload.get("error"):
            code = response.headers.get("x-error-code") or payload.get("error_code")
            raise self.classify_error(response.status_code, code, str(payload["error"]), url)
        return payload

    async def splits(self, dataset: str) -> Dict[str, Any]:
        return await self.fetch_json("splits", {"dataset": dataset})

    async def rows(self, dataset: str, config: str, split: str, offset: int, length: int) -> Dict[str, Any]:
        params = {"dataset": dataset, "config": config, "split": split, "offset": offset, "length": length}
        return await self.fetch_json("rows", params)

    async def fetch_asset(self, url: str, *, max_bytes: int) -> bytes:
        """Download a cell asset (image/audio URL) from an allow-listed host."""
        if not is_allowed_asset_host(url):
            raise InvalidRequest("Asset host is not allowed", context={"url": url})
        response = await self._get(url)
        if response.status_code >= 400:
            code, message = self._extract_error(response)
            raise self.classify_error(response.status_code, code, message, url)
        data = response.content
        if len(data) > max_bytes:
            raise InvalidRequest("Asset too large", context={"url": url, "size": len(data), "limit": max_bytes})
        return data

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None


__all__ = ["CatalogClient", "DEFAULT_BASE_URL", "is_allowed_asset_host"]
