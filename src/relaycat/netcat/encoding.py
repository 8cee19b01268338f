"""
Encoding adapter between a bridged shell and its connection.

On platforms whose console encoding is not UTF-8, shell output is
transcoded from the legacy encoding to UTF-8 before it is sent.
Reads are never transcoded.

A shell's stdin, stdout and stderr all go through one adapter, so
every socket operation runs under a single lock. Writes from stdout
and stderr are ordered by lock acquisition only, not by stream.
"""

import codecs
import logging
import select
import socket
import ssl
import threading

from relaycat.netcat.platforms import PlatformProfile

logger = logging.getLogger(__name__)


class EncodingAdapter:
    """
    Stream decorator around a connection with read/write/close.

    Usage:
        adapter = EncodingAdapter(conn, legacy_encoding="gbk")
        consumed = adapter.write(shell_output)   # == len(shell_output)
        data = adapter.read(4096)
        adapter.close()
    """

    def __init__(
        self,
        conn: socket.socket,
        legacy_encoding: str | None = None,
        poll_interval: float = 0.2,
    ):
        self._conn = conn
        self._lock = threading.Lock()
        self._closed = False
        self.legacy_encoding = legacy_encoding
        self.poll_interval = poll_interval
        self._decoder = None
        if legacy_encoding:
            self._decoder = codecs.getincrementaldecoder(legacy_encoding)(errors="replace")

    @classmethod
    def for_profile(
        cls,
        conn: socket.socket,
        profile: PlatformProfile,
        console_encoding: str,
    ) -> "EncodingAdapter":
        """Build an adapter that transcodes only where the platform needs it."""
        return cls(conn, console_encoding if profile.needs_transcoding else None)

    @property
    def transcoding(self) -> bool:
        return self._decoder is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def transcode(self, data: bytes) -> bytes:
        """Convert legacy-encoded bytes to UTF-8 (identity when not transcoding)."""
        if self._decoder is None:
            return data
        return self._decoder.decode(data).encode("utf-8")

    def write(self, data: bytes) -> int:
        """
        Send data to the peer.

        Returns:
            len(data), the number of input bytes consumed, even when the
            transcoded payload actually sent has a different length
        """
        with self._lock:
            if self._closed:
                raise BrokenPipeError("connection closed")
            payload = self.transcode(data)
            if payload:
                self._conn.sendall(payload)
        return len(data)

    def read(self, size: int) -> bytes:
        """
        Read up to size bytes from the peer.

        Waits for readability outside the lock so that a blocked reader
        never stalls writers. A TLS record may arrive in pieces after
        select() fires, so TLS reads hold the lock for at most
        poll_interval and retry; OpenSSL keeps the partial record.

        Returns:
            Received data (empty at end-of-stream or after close)
        """
        while self._wait_readable():
            with self._lock:
                if self._closed:
                    return b""
                if not isinstance(self._conn, ssl.SSLSocket):
                    return self._conn.recv(size)
                self._conn.settimeout(self.poll_interval)
                try:
                    return self._conn.recv(size)
                except socket.timeout:
                    continue
                finally:
                    self._conn.settimeout(None)
        return b""

    def _wait_readable(self) -> bool:
        if isinstance(self._conn, ssl.SSLSocket) and self._conn.pending():
            return True
        while not self._closed:
            try:
                readable, _, _ = select.select([self._conn], [], [], self.poll_interval)
            except (OSError, ValueError):
                # Descriptor closed underneath us
                return False
            if readable:
                return True
        return False

    def close(self) -> None:
        """Close the underlying connection once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._conn.close()
        logger.debug("Adapter closed")


def transcode(data: bytes, legacy_encoding: str) -> bytes:
    """One-shot legacy -> UTF-8 conversion for self-contained payloads."""
    return data.decode(legacy_encoding, errors="replace").encode("utf-8")
