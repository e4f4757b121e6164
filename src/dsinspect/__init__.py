"""Dataset inspector: browse shards, items and fields of ML datasets in place."""

from .data.engine import Engine, EngineConfig
from .data.models import Response, Source, SourceKind
from .errors import (
    AuthenticationRequired,
    InspectorError,
    InvalidRequest,
    MalformedFormat,
    NetworkError,
    NotFound,
    RangeUnsupported,
    RequestTimeout,
    UnsupportedFeature,
)

__version__ = "0.3.0"

__all__ = [
    "Engine",
    "EngineConfig",
    "Response",
    "Source",
    "SourceKind",
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
