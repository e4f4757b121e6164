"""Field preview construction: binary/text classification, hex snippet,
extension sniffing and declared-encoding handling."""

from __future__ import annotations

import codecs
import re
import struct
from typing import Optional

from .models import FieldPreview

PREVIEW_BYTES = 16 * 1024
PREVIEW_TEXT_CHARS = 8 * 1024
HEX_BYTES = 48
BINARY_RATIO = 0.10

# (offset, signature, extension); checked in order
_MAGIC = [
    (0, b"\x89PNG\r\n\x1a\n", "png"),
    (0, b"\xff\xd8\xff", "jpg"),
    (0, b"GIF87a", "gif"),
    (0, b"GIF89a", "gif"),
    (0, b"BM", None),  # resolved below, too short to trust alone
    (0, b"II*\x00", "tiff"),
    (0, b"MM\x00*", "tiff"),
    (0, b"NIST_1A", "sph"),
    (0, b"fLaC", "flac"),
    (0, b"OggS", "ogg"),
    (0, b"ID3", "mp3"),
    (0, b"%PDF", "pdf"),
    (0, b"PK\x03\x04", "zip"),
    (0, b"\x1f\x8b", "gz"),
    (0, b"\x28\xb5\x2f\xfd", "zst"),
    (0, b"\x93NUMPY", "npy"),
    (0, b"ajkg", "shn"),
    (4, b"ftyp", "mp4"),
]

_TEXT_CONTROL_OK = {0x09, 0x0A, 0x0D, 0x0C, 0x08, 0x1B}

_ENCODING_EXT = {
    "jpeg": "jpg",
    "jpg": "jpg",
    "jpeg_array": "jpg",
    "pil": "png",
    "png": "png",
    "tiff": "tiff",
    "json": "json",
    "pkl": "pkl",
    "pickle": "pkl",
    "npy": "npy",
    "numpy": "npy",
    "video": "mp4",
    "mp4": "mp4",
    "wav": "wav",
    "flac": "flac",
    "mp3": "mp3",
}

_SAFE_EXT_RE = re.compile(r"^[a-z0-9]{1,8}$")


def sniff_extension(data: bytes) -> Optional[str]:
    """Guess a file extension from magic bytes, or None."""
    if not data:
        return None
    if data[:4] == b"RIFF" and len(data) >= 12:
        form = data[8:12]
        if form == b"WAVE":
            return "wav"
        if form == b"WEBP":
            return "webp"
        if form[:3] == b"AVI":
            return "avi"
    for offset, sig, ext in _MAGIC:
        if data[offset:offset + len(sig)] == sig:
            if ext is None:
                if sig == b"BM" and len(data) >= 14 and data[6:10] == b"\x00\x00\x00\x00":
                    return "bmp"
                continue
            return ext
    # bare MPEG audio frame sync
    if len(data) >= 2 and data[0] == 0xFF and (data[1] & 0xE0) == 0xE0:
        return "mp3"
    if len(data) >= 262 and data[257:262] == b"ustar":
        return "tar"
    stripped = data.lstrip()[:1]
    if stripped in (b"{", b"[") and not is_probably_binary(data):
        return "json"
    return None


def is_probably_binary(data: bytes, ratio: float = BINARY_RATIO) -> bool:
    """NUL bytes, too many control bytes, or undecodable UTF-8 mean binary."""
    if not data:
        return False
    if b"\x00" in data:
        return True
    control = sum(1 for b in data if (b < 0x20 and b not in _TEXT_CONTROL_OK) or b == 0x7F)
    if control > len(data) * ratio:
        return True
    decoder = codecs.getincrementaldecoder("utf-8")("strict")
    try:
        decoder.decode(data, final=False)
    except UnicodeDecodeError:
        return True
    return False


def preview_text(data: bytes, max_chars: int = PREVIEW_TEXT_CHARS) -> str:
    """Decode a UTF-8 prefix; a multi-byte sequence cut at the end is dropped."""
    decoder = codecs.getincrementaldecoder("utf-8")("replace")
    text = decoder.decode(data, final=False)
    if len(text) > max_chars:
        text = text[:max_chars]
    return text


def hex_snippet(data: bytes, n: int = HEX_BYTES) -> str:
    return " ".join(f"{b:02x}" for b in data[:n])


def extension_for_encoding(encoding: Optional[str]) -> Optional[str]:
    """Map a declared column/field encoding to a file extension."""
    if not encoding:
        return None
    enc = encoding.strip().lower()
    if ":" in enc:
        _, _, sub = enc.partition(":")
        if _SAFE_EXT_RE.match(sub):
            return "jpg" if sub == "jpeg" else sub
        enc = enc.split(":", 1)[0]
    if enc in _ENCODING_EXT:
        return _ENCODING_EXT[enc]
    if enc.startswith("str") or enc in ("text", "string"):
        return "txt"
    return None


def is_scalar_encoding(encoding: Optional[str]) -> bool:
    if not encoding:
        return False
    enc = encoding.lower()
    return bool(re.match(r"^(u?int(8|16|32|64)?|float(16|32|64)?)$", enc))


def decode_scalar(encoding: Optional[str], data: bytes) -> Optional[str]:
    """Render a little-endian numeric field as text; None if it doesn't fit."""
    if not is_scalar_encoding(encoding):
        return None
    enc = (encoding or "").lower()
    n = len(data)
    if enc.startswith("float"):
        fmt = {2: "<e", 4: "<f", 8: "<d"}.get(n)
    else:
        signed = not enc.startswith("u")
        fmt = {1: "b", 2: "<h", 4: "<i", 8: "<q"}.get(n)
        if fmt and not signed:
            fmt = fmt.upper()
    if fmt is None:
        return None
    (value,) = struct.unpack(fmt, data)
    return repr(value) if isinstance(value, float) else str(value)


def guess_extension(data: bytes, declared_ext: Optional[str] = None) -> str:
    """Magic bytes first, declared metadata second, then text/binary default."""
    sniffed = sniff_extension(data)
    if sniffed:
        return sniffed
    if declared_ext:
        return declared_ext.lower().lstrip(".")
    return "bin" if is_probably_binary(data) else "txt"


def build_preview(
    data: bytes,
    *,
    size: Optional[int] = None,
    declared_ext: Optional[str] = None,
    encoding: Optional[str] = None,
    text_chars: int = PREVIEW_TEXT_CHARS,
    hex_bytes: int = HEX_BYTES,
    binary_ratio: float = BINARY_RATIO,
) -> FieldPreview:
    """Build a :class:`FieldPreview` from the first bytes of a field.

    ``size`` is the true field size when the caller already knows it; ``data``
    may be only a prefix.
    """
    true_size = len(data) if size is None else size
    if declared_ext is None:
        declared_ext = extension_for_encoding(encoding)
    scalar = decode_scalar(encoding, data) if len(data) == true_size else None
    if scalar is not None:
        return FieldPreview(
            text=scalar,
            hex_snippet=hex_snippet(data, hex_bytes),
            guessed_ext="bin",
            is_binary=True,
            size=true_size,
        )
    binary = is_probably_binary(data, binary_ratio)
    ext = guess_extension(data, declared_ext)
    text = None if binary else preview_text(data, text_chars)
    return FieldPreview(
        text=text,
        hex_snippet=hex_snippet(data, hex_bytes),
        guessed_ext=ext,
        is_binary=binary,
        size=true_size,
    )


def sanitize_name(name: str, max_len: int = 80) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9\-_.+]", "_", name).strip("._")
    return (cleaned or "field")[:max_len]
