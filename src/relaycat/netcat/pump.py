"""
Bidirectional byte relay between a connection and local stdin/stdout.
"""

import logging
import select
import socket
import ssl
import sys
import threading
from typing import BinaryIO

from relaycat.config import NetcatConfig
from relaycat.errors import TransferError
from relaycat.logging_config import track_error

logger = logging.getLogger(__name__)

# How often an interactive reader checks whether its session has ended
STDIN_POLL_INTERVAL = 0.1


def hex_dump(data: bytes, prefix: str = "", out=None) -> None:
    """Print hex dump of data."""
    out = out or sys.stderr
    for i in range(0, len(data), 16):
        chunk = data[i:i + 16]
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        ascii_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        print(f"{prefix}{i:08x}  {hex_part:<48}  {ascii_part}", file=out)


class DuplexPump:
    """
    Relays a connection to local streams in two independent directions.

    Inbound copies connection -> stdout until end-of-stream or error.
    Outbound copies stdin -> connection: all at once when stdin is
    redirected, line by line when it is a terminal. Neither direction
    signals the other; the session ends when the connection closes.
    An interactive reader stops once inbound has ended, so a finished
    session never consumes input meant for the next one.

    Usage:
        pump = DuplexPump(conn, config)
        pump.run()      # returns once inbound ends
        conn.close()
    """

    def __init__(
        self,
        conn: socket.socket,
        config: NetcatConfig,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        interactive: bool | None = None,
    ):
        self.conn = conn
        self.config = config
        self.stdin = stdin if stdin is not None else sys.stdin.buffer
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        if interactive is None:
            interactive = _isatty(self.stdin)
        self.interactive = interactive

        self.bytes_in = 0
        self.bytes_out = 0
        self.inbound_done = threading.Event()
        self.outbound_done = threading.Event()

    def run(self) -> None:
        """Start both directions and block until the inbound direction ends."""
        inbound = threading.Thread(target=self.inbound, name="pump-inbound", daemon=True)
        outbound = threading.Thread(target=self.outbound, name="pump-outbound", daemon=True)
        inbound.start()
        outbound.start()
        inbound.join()
        logger.debug(f"Pump finished: {self.bytes_in} bytes in, {self.bytes_out} bytes out")

    def inbound(self) -> None:
        """Connection -> stdout."""
        try:
            while True:
                try:
                    data = self.conn.recv(self.config.buffer_size)
                except OSError as e:
                    raise TransferError(f"Read from connection failed: {e}") from e
                if not data:
                    logger.debug("Connection reached end of stream")
                    break

                self.bytes_in += len(data)
                if self.config.hex_dump:
                    hex_dump(data, "<<< ")
                try:
                    self.stdout.write(data)
                    self.stdout.flush()
                except (OSError, ValueError) as e:
                    raise TransferError(f"Write to stdout failed: {e}") from e
        except TransferError as e:
            track_error("transfer", str(e), e.__cause__)
        finally:
            self.inbound_done.set()

    def outbound(self) -> None:
        """Stdin -> connection."""
        try:
            if self.interactive:
                self._send_lines()
            else:
                self._send_all()
            self._half_close()
        except TransferError as e:
            track_error("transfer", str(e), e.__cause__)
        finally:
            self.outbound_done.set()

    def _send_all(self) -> None:
        try:
            data = self.stdin.read()
        except (OSError, ValueError) as e:
            raise TransferError(f"Read from stdin failed: {e}") from e
        if data:
            self._send(data)

    def _send_lines(self) -> None:
        # Unbuffered, so select() sees every byte not yet consumed
        source = getattr(self.stdin, "raw", self.stdin)
        while self._wait_for_input(source):
            try:
                line = source.readline()
            except (OSError, ValueError) as e:
                raise TransferError(f"Read from stdin failed: {e}") from e
            if not line:
                break
            # Terminals on some platforms hand back lines without "\n"
            self._send(line.rstrip(b"\r\n") + b"\n")

    def _wait_for_input(self, source) -> bool:
        """Block until source has input; False once the session has ended."""
        try:
            fd = source.fileno()
        except (AttributeError, OSError, ValueError):
            fd = None

        while not self.inbound_done.is_set():
            if fd is None:
                return True
            try:
                readable, _, _ = select.select([fd], [], [], STDIN_POLL_INTERVAL)
            except (OSError, ValueError):
                # Not selectable here (Windows consoles): fall back to blocking reads
                return True
            if readable and not self.inbound_done.is_set():
                return True
        return False

    def _send(self, data: bytes) -> None:
        if self.config.hex_dump:
            hex_dump(data, ">>> ")
        try:
            self.conn.sendall(data)
        except OSError as e:
            raise TransferError(f"Write to connection failed: {e}") from e
        self.bytes_out += len(data)

    def _half_close(self) -> None:
        """Signal end-of-stream to the peer on plain TCP connections."""
        if isinstance(self.conn, ssl.SSLSocket) or self.conn.type != socket.SOCK_STREAM:
            return
        try:
            self.conn.shutdown(socket.SHUT_WR)
        except OSError as e:
            logger.debug(f"Half-close failed: {e}")


def _isatty(stream) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False
