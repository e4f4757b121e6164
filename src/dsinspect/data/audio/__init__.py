"""Audio decode helpers: G.711 tables, NIST SPHERE headers, Shorten."""

from .g711 import alaw_to_linear, linear_to_alaw, linear_to_ulaw, ulaw_to_linear
from .pipeline import AudioPipeline, PLAYABLE_EXTS, decode_sphere
from .sphere import SphereHeader, is_sphere, parse_sphere_header
from .shorten import decode_shorten

__all__ = [
    "AudioPipeline",
    "PLAYABLE_EXTS",
    "SphereHeader",
    "alaw_to_linear",
    "decode_shorten",
    "decode_sphere",
    "is_sphere",
    "linear_to_alaw",
    "linear_to_ulaw",
    "parse_sphere_header",
    "ulaw_to_linear",
]
