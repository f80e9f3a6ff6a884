"""Asynchronous clamd client speaking the ``INSTREAM`` protocol directly.

:class:`ScanClient` streams bytes to a running ``clamd`` daemon over TCP and
returns a :class:`~filekeeper.core.scan_result.ScanResult`.

**Fail-closed guarantee:** a scan that cannot be completed is *never*
reported as clean.  Connection failures, timeouts and unrecognised replies
are retried with exponential back-off (2 s, 4 s, 8 s, ...) and, once the
retry budget is spent, surface as
:class:`~filekeeper.core.errors.ScanFailedError` with the last underlying
error chained as ``__cause__``.

**Connections:** every scan and every ping opens a fresh TCP connection.
clamd serves one command per connection in this mode and scanning is not
expected to sit on a hot path.

**Timeouts:** the TCP handshake is bounded by ``connect_timeout``; framing
and reading the verdict share a single ``scan_timeout`` scope.  Either
expiry raises :class:`~filekeeper.core.errors.ScanTimeoutError` whose
``phase`` tells them apart.  Cancellation aborts the transport immediately.

Usage::

    from filekeeper.core.scan_cache import InMemoryScanCache
    from filekeeper.core.scan_client import ScanClient

    client = ScanClient("clamav", 3310, cache=InMemoryScanCache())
    with open("upload.pdf", "rb") as fh:
        result = await client.scan(fh, "upload.pdf")
    if not result.is_clean:
        print("infected:", result.threat_name)
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import logging
from datetime import datetime, timezone
from typing import BinaryIO

from opentelemetry import trace
from prometheus_client import Counter

from filekeeper.core.clamd_protocol import (
    INSTREAM_COMMAND,
    PING_BUFFER_SIZE,
    PING_COMMAND,
    RESPONSE_BUFFER_SIZE,
    TERMINATOR,
    Verdict,
    decode_response,
    encode_chunk,
    is_pong,
    iter_chunks,
    parse_scan_response,
)
from filekeeper.core.errors import (
    ScanConnectionError,
    ScanFailedError,
    ScanTimeoutError,
)
from filekeeper.core.scan_cache import ScanCache, content_cache_key
from filekeeper.core.scan_result import ScanResult

__all__ = ["FILE_TOO_LARGE", "ScanClient", "ScanResult"]

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("filekeeper.scan")

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

_SCANS = Counter(
    "filekeeper_scan_total",
    "Malware scans by outcome",
    ["result"],  # clean | infected | too_large | cached | failed
)
_SCAN_ATTEMPT_ERRORS = Counter(
    "filekeeper_scan_attempt_errors_total",
    "Failed scan attempts (before retry) by error type",
    ["error"],
)

#: Threat name reported for streams above the configured scan limit.
FILE_TOO_LARGE = "FILE_TOO_LARGE"


def _declared_length(stream: BinaryIO) -> int | None:
    """Total length of a seekable *stream*; ``None`` when it cannot be known."""
    if not stream.seekable():
        return None
    position = stream.tell()
    try:
        return stream.seek(0, io.SEEK_END)
    finally:
        stream.seek(position)


class ScanClient:
    """clamd ``INSTREAM`` client with size gating, caching and retries.

    Args:
        host: Hostname or IP address of the clamd daemon.
        port: TCP port clamd listens on.  Defaults to ``3310``.
        max_file_size_bytes: Streams longer than this are reported as
            ``FILE_TOO_LARGE`` without contacting the daemon.  ``0`` disables
            the limit.
        scan_timeout: Seconds allowed for framing plus reading the verdict.
        connect_timeout: Seconds allowed for the TCP handshake (and for a
            whole :meth:`ping`).
        max_retries: Additional attempts after the first failure.
        cache: Optional verdict cache keyed by content hash.
        cache_ttl_seconds: Lifetime of cached verdicts.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 3310,
        *,
        max_file_size_bytes: int = 104_857_600,
        scan_timeout: float = 60.0,
        connect_timeout: float = 10.0,
        max_retries: int = 3,
        cache: ScanCache | None = None,
        cache_ttl_seconds: int = 3600,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._host = host
        self._port = port
        self._max_file_size = max_file_size_bytes
        self._scan_timeout = scan_timeout
        self._connect_timeout = connect_timeout
        self._max_retries = max_retries
        self._cache = cache
        self._cache_ttl = cache_ttl_seconds

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def scan(self, stream: BinaryIO, file_name: str) -> ScanResult:
        """Scan *stream* and return the daemon's verdict.

        Args:
            stream: Binary stream positioned anywhere; it is rewound to the
                start before streaming.  Must be seekable when retries are
                enabled.
            file_name: Name used for logging.

        Returns:
            A clean or infected :class:`ScanResult`, or an unclean
            ``FILE_TOO_LARGE`` result when the size gate trips.

        Raises:
            ValueError: Blank *file_name*, or retries configured for a stream
                that cannot be rewound.
            ScanFailedError: Every attempt failed.
        """
        if not file_name or not file_name.strip():
            raise ValueError("file_name must not be blank")

        with tracer.start_as_current_span("filekeeper.scan") as span:
            span.set_attribute("file.name", file_name)
            logger.info("Starting virus scan file=%s", file_name)

            declared = _declared_length(stream)
            if self._max_file_size > 0 and declared is not None and declared > self._max_file_size:
                logger.warning(
                    "File %s exceeds maximum scan size: %d bytes (limit: %d bytes)",
                    file_name,
                    declared,
                    self._max_file_size,
                )
                _SCANS.labels(result="too_large").inc()
                span.set_attribute("scan.result", "too_large")
                return ScanResult(
                    is_clean=False,
                    threat_name=FILE_TOO_LARGE,
                    details={
                        "reason": "File exceeds maximum scan size",
                        "file_size": str(declared),
                        "max_size": str(self._max_file_size),
                    },
                )

            cache_key: str | None = None
            if self._cache is not None and stream.seekable():
                cache_key = content_cache_key(stream)
                cached = await self._cache.get(cache_key)
                if cached is not None:
                    logger.info("Returning cached scan result for file=%s", file_name)
                    _SCANS.labels(result="cached").inc()
                    span.set_attribute("scan.result", "cached")
                    return cached

            if self._max_retries > 0 and not stream.seekable():
                raise ValueError("Retrying a scan requires a seekable stream")
            if stream.seekable():
                stream.seek(0)

            result = await self._scan_with_retries(stream, file_name)

            if cache_key is not None:
                await self._cache.set(cache_key, result, self._cache_ttl)

            outcome = "clean" if result.is_clean else "infected"
            _SCANS.labels(result=outcome).inc()
            span.set_attribute("scan.result", outcome)
            return result

    async def ping(self) -> bool:
        """Return ``True`` if clamd answers ``zPING`` with ``PONG``.

        Never raises: connection errors, timeouts and unexpected replies all
        yield ``False``.
        """
        writer: asyncio.StreamWriter | None = None
        try:
            async with asyncio.timeout(self._connect_timeout):
                reader, writer = await asyncio.open_connection(self._host, self._port)
                writer.write(PING_COMMAND)
                await writer.drain()
                response = decode_response(await reader.read(PING_BUFFER_SIZE))
        except Exception as exc:
            logger.error("Failed to ping ClamAV server at %s: %r", self.address, exc)
            return False
        finally:
            if writer is not None:
                writer.close()

        available = is_pong(response)
        logger.info(
            "ClamAV server ping %s: %s",
            "succeeded" if available else "failed",
            response,
        )
        return available

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    async def _scan_with_retries(self, stream: BinaryIO, file_name: str) -> ScanResult:
        attempts = self._max_retries + 1
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await self._scan_once(stream, file_name)
            except Exception as exc:
                last_error = exc
                _SCAN_ATTEMPT_ERRORS.labels(error=type(exc).__name__).inc()
                if attempt == attempts:
                    break
                logger.warning(
                    "Scan failed for file %s. Retry %d/%d: %r",
                    file_name,
                    attempt,
                    self._max_retries,
                    exc,
                )
                stream.seek(0)
                await self._backoff(attempt)

        _SCANS.labels(result="failed").inc()
        logger.error(
            "Failed to scan file %s after %d retries: %r",
            file_name,
            self._max_retries,
            last_error,
        )
        raise ScanFailedError(file_name, attempts) from last_error

    async def _backoff(self, attempt: int) -> None:
        await asyncio.sleep(2 ** attempt)

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    async def _open_connection(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=self._connect_timeout,
            )
        except TimeoutError as exc:
            raise ScanTimeoutError(
                "connect",
                f"Connection to ClamAV server {self.address} timed out",
            ) from exc
        except OSError as exc:
            raise ScanConnectionError(
                f"ClamAV daemon unreachable at {self.address}: {exc}"
            ) from exc

    async def _scan_once(self, stream: BinaryIO, file_name: str) -> ScanResult:
        reader, writer = await self._open_connection()
        logger.debug("Connected to ClamAV server at %s", self.address)

        try:
            async with asyncio.timeout(self._scan_timeout):
                bytes_sent = await self._send_instream(writer, stream)
                raw = await reader.read(RESPONSE_BUFFER_SIZE)
        except TimeoutError as exc:
            writer.transport.abort()
            raise ScanTimeoutError(
                "scan",
                f"Virus scan timed out after {self._scan_timeout} seconds for file: {file_name}",
            ) from exc
        except OSError as exc:
            writer.transport.abort()
            raise ScanConnectionError(
                f"Connection to ClamAV server {self.address} failed mid-scan: {exc}"
            ) from exc
        except BaseException:
            # Cancellation: drop the connection, send nothing more.
            writer.transport.abort()
            raise

        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()

        if not raw:
            raise ScanConnectionError(
                f"ClamAV server {self.address} closed the connection without a response"
            )

        response = decode_response(raw)
        logger.debug("ClamAV response: %s", response)

        verdict, threat_name = parse_scan_response(response)
        details = {
            "server": self.address,
            "bytes_scanned": str(bytes_sent),
            "scan_time": datetime.now(tz=timezone.utc).isoformat(),
        }
        if verdict is Verdict.CLEAN:
            logger.info("File %s is clean", file_name)
            return ScanResult(is_clean=True, threat_name=None, details=details)

        details["detection_details"] = response
        logger.warning("File %s is infected with: %s", file_name, threat_name)
        return ScanResult(is_clean=False, threat_name=threat_name, details=details)

    @staticmethod
    async def _send_instream(writer: asyncio.StreamWriter, stream: BinaryIO) -> int:
        writer.write(INSTREAM_COMMAND)
        total = 0
        for chunk in iter_chunks(stream):
            writer.write(encode_chunk(chunk))
            await writer.drain()
            total += len(chunk)
        writer.write(TERMINATOR)
        await writer.drain()
        logger.debug("Sent %d bytes to ClamAV for scanning", total)
        return total
