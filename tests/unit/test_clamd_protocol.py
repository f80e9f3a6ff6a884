"""Unit tests for the clamd INSTREAM framing and reply parsing helpers."""

from __future__ import annotations

import io
import struct

import pytest

from filekeeper.core.clamd_protocol import (
    CHUNK_SIZE,
    INSTREAM_COMMAND,
    PING_COMMAND,
    TERMINATOR,
    UNKNOWN_THREAT,
    Verdict,
    decode_chunk,
    decode_response,
    encode_chunk,
    extract_threat_name,
    is_pong,
    iter_chunks,
    parse_scan_response,
)
from filekeeper.core.errors import ScanProtocolError


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


class TestFraming:
    def test_commands_are_nul_terminated(self) -> None:
        assert PING_COMMAND == b"zPING\x00"
        assert INSTREAM_COMMAND == b"zINSTREAM\x00"

    def test_terminator_is_four_zero_bytes(self) -> None:
        assert TERMINATOR == b"\x00\x00\x00\x00"

    def test_length_prefix_is_big_endian(self) -> None:
        frame = encode_chunk(b"abc")
        assert frame == b"\x00\x00\x00\x03abc"

    @pytest.mark.parametrize("length", [0, 1, 255, 256, 4096, CHUNK_SIZE - 1, CHUNK_SIZE])
    def test_encode_then_decode_returns_payload(self, length: int) -> None:
        payload = bytes(i % 251 for i in range(length))
        frame = encode_chunk(payload)
        assert len(frame) == 4 + length
        assert struct.unpack(">I", frame[:4])[0] == length
        assert decode_chunk(frame) == (length, payload)

    def test_oversized_chunk_refused(self) -> None:
        with pytest.raises(ValueError):
            encode_chunk(b"x" * (CHUNK_SIZE + 1))

    def test_decode_short_frame_raises(self) -> None:
        with pytest.raises(ScanProtocolError):
            decode_chunk(b"\x00\x00\x00\x10abc")

    def test_decode_missing_prefix_raises(self) -> None:
        with pytest.raises(ScanProtocolError):
            decode_chunk(b"\x00\x01")

    def test_iter_chunks_splits_at_chunk_size(self) -> None:
        data = b"a" * (CHUNK_SIZE * 2 + 10)
        chunks = list(iter_chunks(io.BytesIO(data)))
        assert [len(c) for c in chunks] == [CHUNK_SIZE, CHUNK_SIZE, 10]

    def test_iter_chunks_empty_stream(self) -> None:
        assert list(iter_chunks(io.BytesIO(b""))) == []


# ---------------------------------------------------------------------------
# Replies
# ---------------------------------------------------------------------------


class TestReplies:
    def test_decode_strips_nul_padding(self) -> None:
        assert decode_response(b"stream: OK\x00\x00") == "stream: OK"

    def test_decode_replaces_non_ascii(self) -> None:
        assert "�" in decode_response(b"stream: \xff OK\x00")

    def test_ok_is_clean(self) -> None:
        assert parse_scan_response("stream: OK") == (Verdict.CLEAN, None)

    def test_found_is_infected_with_name(self) -> None:
        assert parse_scan_response("stream: Eicar-Test-Signature FOUND") == (
            Verdict.INFECTED,
            "Eicar-Test-Signature",
        )

    def test_found_checked_before_ok(self) -> None:
        # "Bookmark" contains "OK"; the reply must still read as infected.
        verdict, name = parse_scan_response("stream: Win.Trojan.Bookmark FOUND")
        assert verdict is Verdict.INFECTED
        assert name == "Win.Trojan.Bookmark"

    def test_unrecognised_reply_raises_with_response(self) -> None:
        with pytest.raises(ScanProtocolError) as exc_info:
            parse_scan_response("INSTREAM size limit exceeded. ERROR")
        assert exc_info.value.response == "INSTREAM size limit exceeded. ERROR"

    def test_threat_name_without_colon(self) -> None:
        assert extract_threat_name("Eicar FOUND") == UNKNOWN_THREAT

    def test_threat_name_case_insensitive_marker(self) -> None:
        assert extract_threat_name("stream: Some.Virus found") == "Some.Virus"

    @pytest.mark.parametrize("reply,expected", [("PONG", True), ("pong", True), ("", False), ("ERROR", False)])
    def test_is_pong(self, reply: str, expected: bool) -> None:
        assert is_pong(reply) is expected
