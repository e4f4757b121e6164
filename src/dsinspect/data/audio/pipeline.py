"""Turn audio field bytes into a playable temp file.

Directly playable containers are copied unchanged. SPHERE files (plain PCM,
mu-law, A-law or embedded Shorten) are decoded to 16-bit PCM and written as
WAV with the standard library ``wave`` module.
"""

from __future__ import annotations

import io
import logging
import sys
import wave
from array import array
from dataclasses import dataclass
from typing import Optional

from ...errors import UnsupportedFeature
from ..models import MaterializedFile
from ..preview import sniff_extension
from ..temp_files import TempFileStore
from .g711 import decode_alaw_bytes, decode_ulaw_bytes
from .shorten import decode_shorten
from .sphere import is_sphere, parse_sphere_header

logger = logging.getLogger(__name__)

PLAYABLE_EXTS = frozenset({"wav", "mp3", "flac", "ogg", "opus", "m4a", "aac", "webm"})


@dataclass
class DecodedAudio:
    samples: array
    channels: int
    sample_rate: int
    source_coding: str

    @property
    def frames(self) -> int:
        return len(self.samples) // self.channels if self.channels else 0

    def pcm_le(self) -> bytes:
        if sys.byteorder == "big":
            swapped = array("h", self.samples)
            swapped.byteswap()
            return swapped.tobytes()
        return self.samples.tobytes()


def decode_sphere(data: bytes) -> DecodedAudio:
    """Decode a complete SPHERE file to interleaved PCM16 samples."""
    header = parse_sphere_header(data)
    payload = data[header.header_bytes:]
    channels = header.channel_count

    if header.is_shorten:
        stream = decode_shorten(payload)
        if stream.channels != channels:
            logger.warning(
                "SPHERE declares %d channel(s) but Shorten stream has %d; using stream value",
                channels,
                stream.channels,
            )
            channels = stream.channels
        samples = stream.samples
    else:
        coding = header.base_coding
        if coding == "pcm" and header.sample_n_bytes == 2:
            samples = array("h")
            samples.frombytes(payload[: len(payload) // 2 * 2])
            if header.big_endian != (sys.byteorder == "big"):
                samples.byteswap()
        elif coding == "pcm" and header.sample_n_bytes == 1:
            samples = array("h", ((b - 256 if b > 127 else b) << 8 for b in payload))
        elif coding == "ulaw":
            samples = array("h", decode_ulaw_bytes(payload))
        elif coding == "alaw":
            samples = array("h", decode_alaw_bytes(payload))
        else:
            raise UnsupportedFeature(
                "No decoder for SPHERE sample coding",
                context={"sample_coding": header.sample_coding, "sample_n_bytes": header.sample_n_bytes},
            )

    if header.sample_count is not None:
        expected = header.sample_count * channels
        if len(samples) > expected:
            samples = samples[:expected]
        elif len(samples) < expected:
            logger.warning(
                "SPHERE payload decoded to %d samples, header declares %d",
                len(samples),
                expected,
            )

    return DecodedAudio(
        samples=samples,
        channels=channels,
        sample_rate=header.sample_rate,
        source_coding=header.sample_coding,
    )


def wav_bytes(audio: DecodedAudio) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(audio.channels)
        wav.setsampwidth(2)
        wav.setframerate(audio.sample_rate)
        wav.writeframes(audio.pcm_le())
    return buf.getvalue()


class AudioPipeline:
    """Produces playable temp files, reference-counted by request id."""

    def __init__(self, store: TempFileStore) -> None:
        self.store = store

    def prepare(
        self,
        data: bytes,
        *,
        name: str,
        request_id: int,
        ext: Optional[str] = None,
    ) -> MaterializedFile:
        sniffed = sniff_extension(data[:64]) or (ext or "").lower() or None
        if sniffed == "sph" or is_sphere(data):
            existing = self.store.get(name, "wav", request_id)
            if existing is not None:
                return MaterializedFile(
                    path=str(existing), size=existing.stat().st_size, ext="wav", decoded_from="sph"
                )
            decoded = decode_sphere(data)
            payload = wav_bytes(decoded)
            path = self.store.write(name, "wav", payload, request_id)
            logger.info(
                "Decoded SPHERE (%s) to WAV: %d frames, %d ch, %d Hz",
                decoded.source_coding,
                decoded.frames,
                decoded.channels,
                decoded.sample_rate,
            )
            return MaterializedFile(path=str(path), size=len(payload), ext="wav", decoded_from="sph")
        if sniffed in PLAYABLE_EXTS:
            path = self.store.write(name, sniffed, data, request_id)
            return MaterializedFile(path=str(path), size=len(data), ext=sniffed)
        raise UnsupportedFeature("No audio decoder for field", context={"codec": sniffed or "unknown"})
