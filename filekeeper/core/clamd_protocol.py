"""clamd ``INSTREAM`` wire protocol: framing and response parsing.

The scanner daemon accepts NUL-terminated commands prefixed with ``z``.  A
stream scan looks like this on the wire::

    zINSTREAM\\0
    <uint32 big-endian length><payload bytes>     repeated, <= 8192 bytes each
    \\0\\0\\0\\0                                      zero-length terminator

and the daemon answers with a single line such as ``stream: OK\\0`` or
``stream: Eicar-Test-Signature FOUND\\0``.

This module is pure (no I/O) so it can be exercised without a daemon; the
socket handling lives in :mod:`filekeeper.core.scan_client`.
"""

from __future__ import annotations

import enum
import struct
from typing import BinaryIO, Iterator

from filekeeper.core.errors import ScanProtocolError

PING_COMMAND = b"zPING\0"
INSTREAM_COMMAND = b"zINSTREAM\0"

#: Payload bytes per INSTREAM frame.
CHUNK_SIZE = 8192

#: Bytes read for a scan verdict.
RESPONSE_BUFFER_SIZE = 2048

#: Bytes read for a PING reply.
PING_BUFFER_SIZE = 256

_LENGTH_PREFIX = struct.Struct(">I")

#: Zero-length frame that ends an INSTREAM payload.
TERMINATOR = _LENGTH_PREFIX.pack(0)

UNKNOWN_THREAT = "UNKNOWN_THREAT"

_OK = "OK"
_FOUND = "FOUND"
_PONG = "PONG"


class Verdict(str, enum.Enum):
    CLEAN = "clean"
    INFECTED = "infected"


def encode_chunk(chunk: bytes) -> bytes:
    """Return *chunk* prefixed with its 4-byte big-endian length."""
    if len(chunk) > CHUNK_SIZE:
        raise ValueError(f"chunk of {len(chunk)} bytes exceeds frame limit {CHUNK_SIZE}")
    return _LENGTH_PREFIX.pack(len(chunk)) + chunk


def decode_chunk(frame: bytes) -> tuple[int, bytes]:
    """Inverse of :func:`encode_chunk`; returns ``(length, payload)``.

    Raises:
        ScanProtocolError: If the frame is shorter than its declared length.
    """
    if len(frame) < _LENGTH_PREFIX.size:
        raise ScanProtocolError("frame is missing its length prefix")
    (length,) = _LENGTH_PREFIX.unpack_from(frame)
    payload = frame[_LENGTH_PREFIX.size:_LENGTH_PREFIX.size + length]
    if len(payload) != length:
        raise ScanProtocolError(
            f"frame declares {length} bytes but carries {len(payload)}"
        )
    return length, payload


def iter_chunks(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield successive non-empty reads of at most *chunk_size* bytes."""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            return
        yield chunk


def decode_response(raw: bytes) -> str:
    """ASCII-decode a daemon reply and strip NUL padding."""
    return raw.decode("ascii", errors="replace").strip("\0")


def extract_threat_name(response: str) -> str:
    """Pull the signature name out of ``"stream: <name> FOUND"``.

    The name is the text between the first ``:`` and the last
    (case-insensitive) ``FOUND`` marker.  Without a colon the name is
    :data:`UNKNOWN_THREAT`.
    """
    _, sep, rest = response.partition(":")
    if not sep:
        return UNKNOWN_THREAT
    rest = rest.strip()
    marker = rest.upper().rfind(_FOUND)
    if marker > 0:
        return rest[:marker].strip()
    return rest


def parse_scan_response(response: str) -> tuple[Verdict, str | None]:
    """Map a decoded INSTREAM reply onto ``(verdict, threat_name)``.

    ``FOUND`` is checked first, the reverse of the usual daemon client order
    that tests for ``OK`` before ``FOUND``.  Signature names may themselves
    contain ``OK`` (``Win.Trojan.Bookmark``), and such a reply must never
    read as clean.

    Raises:
        ScanProtocolError: If the reply contains neither ``OK`` nor ``FOUND``.
    """
    upper = response.upper()
    if _FOUND in upper:
        return Verdict.INFECTED, extract_threat_name(response)
    if _OK in upper:
        return Verdict.CLEAN, None
    raise ScanProtocolError(f"Unexpected clamd response: {response!r}", response=response)


def is_pong(response: str) -> bool:
    return _PONG in response.upper()
