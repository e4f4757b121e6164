"""Shorten lossless audio decompressor.

``decode_shorten`` is the only entry point: compressed bytes in, interleaved
16-bit PCM out. Lookup tables and bit-reader state stay inside this module.
"""

from __future__ import annotations

import logging
from array import array
from dataclasses import dataclass
from typing import List

from ...errors import MalformedFormat, UnsupportedFeature
from .g711 import alaw_to_linear, linear_to_alaw, linear_to_ulaw, ulaw_to_linear

logger = logging.getLogger(__name__)

MAGIC = b"ajkg"
MAX_VERSION = 3
MAX_CHANNELS = 8
MAX_BLOCKSIZE = 65535

DEFAULT_BLOCK_SIZE = 256
DEFAULT_V2_NMEAN = 4
NWRAP = 3

ULONGSIZE = 2
TYPESIZE = 4
CHANSIZE = 0
LPCQSIZE = 2
ENERGYSIZE = 3
BITSHIFTSIZE = 2
NSKIPSIZE = 1
XBYTESIZE = 7
FNSIZE = 2
LPCQUANT = 5
V2LPCQOFFSET = 1 << LPCQUANT
VERBATIM_CKSIZE_SIZE = 5
VERBATIM_BYTE_SIZE = 8

FN_DIFF0 = 0
FN_DIFF1 = 1
FN_DIFF2 = 2
FN_DIFF3 = 3
FN_QUIT = 4
FN_BLOCKSIZE = 5
FN_BITSHIFT = 6
FN_QLPC = 7
FN_ZERO = 8
FN_VERBATIM = 9

TYPE_S8 = 1
TYPE_U8 = 2
TYPE_S16HL = 3
TYPE_U16HL = 4
TYPE_S16LH = 5
TYPE_U16LH = 6
TYPE_ULAW = 7
TYPE_ALAW = 10

_SUPPORTED_TYPES = {
    TYPE_S8,
    TYPE_U8,
    TYPE_S16HL,
    TYPE_U16HL,
    TYPE_S16LH,
    TYPE_U16LH,
    TYPE_ULAW,
    TYPE_ALAW,
}

_FIXED_COEFFS = ((), (1,), (2, -1), (3, -3, 1))


class _EndOfData(Exception):
    pass


def _cdiv(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def _clamp(value: int, low: int, high: int) -> int:
    return low if value < low else high if value > high else value


class _BitReader:
    """MSB-first bit reader with Rice/Golomb helpers."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0
        self._nbits = len(data) * 8

    @property
    def bit_position(self) -> int:
        return self._pos

    def bits(self, n: int) -> int:
        if n == 0:
            return 0
        pos = self._pos
        if pos + n > self._nbits:
            raise _EndOfData()
        start = pos >> 3
        end = (pos + n + 7) >> 3
        chunk = int.from_bytes(self._data[start:end], "big")
        shift = (end - start) * 8 - (pos & 7) - n
        self._pos = pos + n
        return (chunk >> shift) & ((1 << n) - 1)

    def unary(self) -> int:
        data = self._data
        count = 0
        pos = self._pos
        while True:
            if pos >= self._nbits:
                raise _EndOfData()
            if (pos & 7) == 0 and data[pos >> 3] == 0:
                count += 8
                pos += 8
                continue
            bit = (data[pos >> 3] >> (7 - (pos & 7))) & 1
            pos += 1
            if bit:
                self._pos = pos
                return count
            count += 1

    def ur(self, k: int) -> int:
        high = self.unary()
        return (high << k) | self.bits(k)

    def sr(self, k: int) -> int:
        u = self.ur(k + 1)
        return (u >> 1) ^ -(u & 1)


@dataclass
class ShortenStream:
    """Decoded stream: interleaved PCM16 samples plus stream parameters."""

    samples: array
    channels: int
    file_type: int
    version: int

    @property
    def frames(self) -> int:
        return len(self.samples) // self.channels if self.channels else 0


class _Decoder:
    def __init__(self, data: bytes) -> None:
        self.reader = _BitReader(data)
        self.version = 0
        self.file_type = 0
        self.channels = 0
        self.blocksize = DEFAULT_BLOCK_SIZE
        self.maxnlpc = 0
        self.nmean = 0
        self.bitshift = 0
        self.nwrap = NWRAP
        self.lpcqoffset = 0

    def _uint(self, k: int) -> int:
        if self.version != 0:
            k = self.reader.ur(ULONGSIZE)
        return self.reader.ur(k)

    def read_header(self) -> None:
        r = self.reader
        try:
            if r.bits(32) != int.from_bytes(MAGIC, "big"):
                raise MalformedFormat("Missing Shorten magic", context={"offset": 0})
            self.version = r.bits(8)
            if self.version > MAX_VERSION:
                raise UnsupportedFeature(
                    "Unsupported Shorten version", context={"version": self.version}
                )
            self.file_type = self._uint(TYPESIZE)
            self.channels = self._uint(CHANSIZE)
            self.nmean = 0 if self.version < 2 else DEFAULT_V2_NMEAN
            if self.version > 0:
                self.blocksize = self._uint(DEFAULT_BLOCK_SIZE.bit_length() - 1)
                self.maxnlpc = self._uint(LPCQSIZE)
                self.nmean = self._uint(0)
                skip = self._uint(NSKIPSIZE)
                for _ in range(skip):
                    r.ur(XBYTESIZE)
        except _EndOfData as exc:
            raise MalformedFormat("Truncated Shorten header") from exc

        if self.file_type not in _SUPPORTED_TYPES:
            raise UnsupportedFeature(
                "Unsupported Shorten sample type", context={"file_type": self.file_type}
            )
        if not 1 <= self.channels <= MAX_CHANNELS:
            raise MalformedFormat("Invalid Shorten channel count", context={"channels": self.channels})
        if not 1 <= self.blocksize <= MAX_BLOCKSIZE:
            raise MalformedFormat("Invalid Shorten block size", context={"blocksize": self.blocksize})
        if self.maxnlpc > 1024 or self.nmean > 32768:
            raise MalformedFormat(
                "Shorten predictor parameters out of range",
                context={"maxnlpc": self.maxnlpc, "nmean": self.nmean},
            )
        self.nwrap = max(NWRAP, self.maxnlpc)
        if self.version > 1:
            self.lpcqoffset = V2LPCQOFFSET

    def _initial_mean(self) -> int:
        if self.file_type == TYPE_U8:
            return 0x80
        if self.file_type in (TYPE_U16HL, TYPE_U16LH):
            return 0x8000
        return 0

    def _to_pcm16(self, value: int) -> int:
        ftype = self.file_type
        if ftype in (TYPE_S16HL, TYPE_S16LH):
            return _clamp(value, -32768, 32767)
        if ftype in (TYPE_U16HL, TYPE_U16LH):
            return _clamp(value, 0, 65535) - 32768
        if ftype == TYPE_S8:
            return _clamp(value, -128, 127) << 8
        if ftype == TYPE_U8:
            return (_clamp(value, 0, 255) - 128) << 8
        # companded types store linear samples scaled down by 3 bits; the
        # stream's native output is the companded byte, converted back here
        linear = _clamp(value << 3, -32768, 32767)
        if ftype == TYPE_ULAW:
            return ulaw_to_linear(linear_to_ulaw(linear))
        return alaw_to_linear(linear_to_alaw(linear))

    def _decode_block(self, command: int, history: List[int], residual_size: int, coffset: int) -> List[int]:
        r = self.reader
        nwrap = self.nwrap
        if command == FN_QLPC:
            order = r.ur(LPCQSIZE)
            if order > nwrap:
                raise MalformedFormat(
                    "Shorten LPC order exceeds wrap", context={"order": order, "nwrap": nwrap}
                )
            coeffs = tuple(r.sr(LPCQUANT) for _ in range(order))
            qshift = LPCQUANT
        else:
            order = command
            coeffs = _FIXED_COEFFS[order]
            qshift = 0

        buf = list(history) + [0] * self.blocksize
        if command == FN_QLPC and coffset:
            for i in range(nwrap - order, nwrap):
                buf[i] -= coffset

        if order:
            init_sum = self.lpcqoffset if command == FN_QLPC else 0
        else:
            init_sum = coffset

        for i in range(nwrap, nwrap + self.blocksize):
            total = init_sum
            for j, c in enumerate(coeffs):
                total += c * buf[i - j - 1]
            buf[i] = r.sr(residual_size) + (total >> qshift)

        if command == FN_QLPC and coffset:
            for i in range(nwrap, nwrap + self.blocksize):
                buf[i] += coffset
        return buf

    def run(self) -> ShortenStream:
        self.read_header()
        r = self.reader
        channels = self.channels
        mean = self._initial_mean()
        offsets = [[mean] * max(1, self.nmean) for _ in range(channels)]
        history = [[0] * self.nwrap for _ in range(channels)]
        pending: List[List[int]] = []
        out = array("h")
        cur_chan = 0

        while True:
            try:
                command = r.ur(FNSIZE)
            except _EndOfData:
                if cur_chan:
                    raise MalformedFormat(
                        "Shorten stream ended mid-frame", context={"bit": r.bit_position}
                    )
                logger.debug("Shorten stream ended without a quit command")
                break
            try:
                if command == FN_QUIT:
                    break
                if command == FN_VERBATIM:
                    length = r.ur(VERBATIM_CKSIZE_SIZE)
                    for _ in range(length):
                        r.ur(VERBATIM_BYTE_SIZE)
                    continue
                if command == FN_BITSHIFT:
                    self.bitshift = r.ur(BITSHIFTSIZE)
                    if self.bitshift > 32:
                        raise MalformedFormat("Invalid Shorten bitshift", context={"bitshift": self.bitshift})
                    continue
                if command == FN_BLOCKSIZE:
                    size = self._uint(self.blocksize.bit_length() - 1)
                    if not 1 <= size <= MAX_BLOCKSIZE:
                        raise MalformedFormat("Invalid Shorten block size", context={"blocksize": size})
                    self.blocksize = size
                    continue
                if command > FN_VERBATIM:
                    raise MalformedFormat("Unknown Shorten command", context={"command": command})

                residual_size = 0
                if command != FN_ZERO:
                    residual_size = r.ur(ENERGYSIZE)
                    if self.version == 0:
                        residual_size -= 1

                chan_offsets = offsets[cur_chan]
                if self.nmean == 0:
                    coffset = chan_offsets[0]
                else:
                    total = 0 if self.version < 2 else self.nmean // 2
                    total += sum(chan_offsets[: self.nmean])
                    coffset = _cdiv(total, self.nmean)
                    if self.version >= 2 and self.bitshift:
                        coffset = (coffset >> (self.bitshift - 1)) >> 1

                if command == FN_ZERO:
                    buf = list(history[cur_chan]) + [0] * self.blocksize
                else:
                    buf = self._decode_block(command, history[cur_chan], residual_size, coffset)
            except _EndOfData as exc:
                raise MalformedFormat(
                    "Truncated Shorten block", context={"bit": r.bit_position}
                ) from exc

            block = buf[self.nwrap:]
            if self.nmean > 0:
                total = 0 if self.version < 2 else self.blocksize // 2
                total += sum(block)
                if self.version < 2:
                    new_mean = _cdiv(total, self.blocksize)
                elif self.bitshift == 32:
                    new_mean = 0
                else:
                    new_mean = _cdiv(total, self.blocksize) * (1 << self.bitshift)
                offsets[cur_chan] = chan_offsets[1:] + [new_mean]

            history[cur_chan] = buf[-self.nwrap:]
            if self.bitshift == 32:
                shifted = [0] * len(block)
            elif self.bitshift:
                shifted = [v << self.bitshift for v in block]
            else:
                shifted = block
            pending.append(shifted)

            cur_chan += 1
            if cur_chan == channels:
                if channels == 1:
                    out.extend(self._to_pcm16(v) for v in pending[0])
                else:
                    for frame in zip(*pending):
                        out.extend(self._to_pcm16(v) for v in frame)
                pending = []
                cur_chan = 0

        return ShortenStream(samples=out, channels=channels, file_type=self.file_type, version=self.version)


def decode_shorten(data: bytes) -> ShortenStream:
    """Decode a Shorten bitstream to interleaved signed 16-bit samples."""
    return _Decoder(data).run()
