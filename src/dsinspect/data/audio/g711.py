"""G.711 mu-law and A-law conversion.

Decoding goes through 256-entry tables built once at import. The encoders
work on 16-bit linear samples.
"""

from __future__ import annotations

from typing import List

_ULAW_BIAS = 0x84
_ULAW_CLIP = 32635

# exponent lookup indexed by the biased magnitude >> 7
_EXP_LUT = tuple(0 if i == 0 else i.bit_length() - 1 for i in range(256))

_ALAW_SEG_END = (0x1F, 0x3F, 0x7F, 0xFF, 0x1FF, 0x3FF, 0x7FF, 0xFFF)


def _ulaw_decode(code: int) -> int:
    code = ~code & 0xFF
    sign = code & 0x80
    exponent = (code >> 4) & 0x07
    mantissa = code & 0x0F
    sample = (((mantissa << 3) + _ULAW_BIAS) << exponent) - _ULAW_BIAS
    return -sample if sign else sample


def _alaw_decode(code: int) -> int:
    code ^= 0x55
    t = (code & 0x0F) << 4
    seg = (code & 0x70) >> 4
    if seg == 0:
        t += 8
    elif seg == 1:
        t += 0x108
    else:
        t += 0x108
        t <<= seg - 1
    return t if code & 0x80 else -t


ULAW_TO_LINEAR = tuple(_ulaw_decode(i) for i in range(256))
ALAW_TO_LINEAR = tuple(_alaw_decode(i) for i in range(256))


def ulaw_to_linear(code: int) -> int:
    return ULAW_TO_LINEAR[code & 0xFF]


def alaw_to_linear(code: int) -> int:
    return ALAW_TO_LINEAR[code & 0xFF]


def linear_to_ulaw(sample: int) -> int:
    sign = (sample >> 8) & 0x80
    if sign:
        sample = -sample
    if sample > _ULAW_CLIP:
        sample = _ULAW_CLIP
    sample += _ULAW_BIAS
    exponent = _EXP_LUT[(sample >> 7) & 0xFF]
    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def linear_to_alaw(sample: int) -> int:
    pcm = sample >> 3
    if pcm >= 0:
        mask = 0xD5
    else:
        mask = 0x55
        pcm = -pcm - 1
    seg = 8
    for i, end in enumerate(_ALAW_SEG_END):
        if pcm <= end:
            seg = i
            break
    if seg >= 8:
        return 0x7F ^ mask
    aval = seg << 4
    if seg < 2:
        aval |= (pcm >> 1) & 0x0F
    else:
        aval |= (pcm >> seg) & 0x0F
    return aval ^ mask


def decode_ulaw_bytes(data: bytes) -> List[int]:
    return [ULAW_TO_LINEAR[b] for b in data]


def decode_alaw_bytes(data: bytes) -> List[int]:
    return [ALAW_TO_LINEAR[b] for b in data]
