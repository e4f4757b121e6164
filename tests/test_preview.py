"""
Tests for field preview construction and extension guessing.
"""

import struct


def test_sniff_known_signatures():
    """Magic bytes win over everything else."""
    from dsinspect.data.preview import sniff_extension

    assert sniff_extension(b"\x89PNG\r\n\x1a\n....") == "png"
    assert sniff_extension(b"\xff\xd8\xff\xe0rest") == "jpg"
    assert sniff_extension(b"RIFF\x00\x00\x00\x00WAVEfmt ") == "wav"
    assert sniff_extension(b"NIST_1A\n   1024\n") == "sph"
    assert sniff_extension(b"ajkg\x02") == "shn"
    assert sniff_extension(b"PK\x03\x04") == "zip"
    assert sniff_extension(b"\x00\x00\x00\x18ftypmp42") == "mp4"
    assert sniff_extension(b"") is None


def test_sniff_json_requires_text():
    """A leading brace only means JSON when the bytes look like text."""
    from dsinspect.data.preview import sniff_extension

    assert sniff_extension(b'  {"a": 1}') == "json"
    assert sniff_extension(b"[1, 2, 3]") == "json"
    assert sniff_extension(b"{\x00\x01\x02") is None


def test_binary_classification():
    """NUL bytes, control-heavy data and invalid UTF-8 are binary."""
    from dsinspect.data.preview import is_probably_binary

    assert not is_probably_binary(b"plain text\nwith lines\t and tabs")
    assert not is_probably_binary("café ☃".encode("utf-8"))
    assert is_probably_binary(b"abc\x00def")
    assert is_probably_binary(bytes(range(1, 32)) * 4)
    assert is_probably_binary(b"\xc3\x28 broken utf-8")
    assert not is_probably_binary(b"")


def test_truncated_multibyte_sequence_stays_text():
    """A prefix that cuts a UTF-8 sequence in half is still text."""
    from dsinspect.data.preview import build_preview

    data = ("x" * 10 + "☃").encode("utf-8")
    preview = build_preview(data[:-1], size=len(data))

    assert not preview.is_binary
    assert preview.text == "x" * 10
    assert preview.size == len(data)


def test_preview_text_and_hex_limits():
    """Text is capped by characters and the hex snippet by bytes."""
    from dsinspect.data.preview import build_preview

    preview = build_preview(b"a" * 100, text_chars=10, hex_bytes=4)

    assert preview.text == "a" * 10
    assert preview.hex_snippet == "61 61 61 61"
    assert preview.guessed_ext == "txt"


def test_binary_preview_has_no_text():
    """Binary fields only carry a hex snippet."""
    from dsinspect.data.preview import build_preview

    preview = build_preview(b"\x00\x01\x02\x03", declared_ext="npy")

    assert preview.is_binary
    assert preview.text is None
    assert preview.hex_snippet == "00 01 02 03"
    assert preview.guessed_ext == "npy"


def test_magic_beats_declared_extension():
    """Declared metadata is only a fallback for unrecognised bytes."""
    from dsinspect.data.preview import guess_extension

    assert guess_extension(b"\x89PNG\r\n\x1a\nxxxx", "jpg") == "png"
    assert guess_extension(b"\x01\x02\x03\x00", ".PKL") == "pkl"
    assert guess_extension(b"\x01\x02\x03\x00") == "bin"
    assert guess_extension(b"hello") == "txt"


def test_scalar_encodings_render_as_numbers():
    """Fixed-width numeric fields preview as their value."""
    from dsinspect.data.preview import build_preview, decode_scalar

    assert decode_scalar("int", struct.pack("<q", -42)) == "-42"
    assert decode_scalar("uint8", b"\xff") == "255"
    assert decode_scalar("float32", struct.pack("<f", 1.5)) == "1.5"
    assert decode_scalar("int32", b"\x01\x02\x03") is None
    assert decode_scalar("str", b"1234") is None

    preview = build_preview(struct.pack("<i", 7), encoding="int32")
    assert preview.text == "7"
    assert preview.is_binary
    assert preview.guessed_ext == "bin"


def test_encoding_extensions():
    """Column encodings map to extensions."""
    from dsinspect.data.preview import extension_for_encoding

    assert extension_for_encoding("jpeg") == "jpg"
    assert extension_for_encoding("PIL") == "png"
    assert extension_for_encoding("str") == "txt"
    assert extension_for_encoding("video:webm") == "webm"
    assert extension_for_encoding("bytes") is None
    assert extension_for_encoding(None) is None


def test_sanitize_name():
    """Artifact names keep only filesystem-safe characters."""
    from dsinspect.data.preview import sanitize_name

    assert sanitize_name("ns/name-train-i0-f1") == "ns_name-train-i0-f1"
    assert sanitize_name("../../etc/passwd") == "etc_passwd"
    assert sanitize_name("...") == "field"
    assert len(sanitize_name("x" * 500)) == 80
