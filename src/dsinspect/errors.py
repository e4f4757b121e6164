"""Typed error taxonomy shared by every adapter.

Errors carry a stable ``code`` plus a small ``context`` mapping (shard name,
byte offset, url ...) so structural failures can be diagnosed without a
debugger and serialised across a request/response boundary.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class InspectorError(Exception):
    """Base class for all engine errors."""

    code = "error"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": dict(self.context)}


class InvalidRequest(InspectorError):
    code = "invalid_request"


class NotFound(InspectorError):
    code = "not_found"


class MalformedFormat(InspectorError):
    code = "malformed_format"


class UnsupportedFeature(InspectorError):
    code = "unsupported_feature"


class RangeUnsupported(InspectorError):
    code = "range_unsupported"


class AuthenticationRequired(InspectorError):
    code = "authentication_required"


class NetworkError(InspectorError):
    code = "network"

    def __init__(
        self,
        message: str,
        *,
        kind: str = "transport",
        status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = dict(context or {})
        ctx.setdefault("kind", kind)
        if status is not None:
            ctx.setdefault("status", status)
        super().__init__(message, context=ctx)
        self.kind = kind
        self.status = status


class RequestTimeout(InspectorError):
    code = "timeout"


__all__ = [
    "InspectorError",
    "InvalidRequest",
    "NotFound",
    "MalformedFormat",
    "UnsupportedFeature",
    "RangeUnsupported",
    "AuthenticationRequired",
    "NetworkError",
    "RequestTimeout",
]
