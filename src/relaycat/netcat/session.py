"""
Session orchestration and shutdown handling.

The controller turns a NetcatConfig into listener or dialer activity,
hands each connection to a ShellBridge or DuplexPump, and guarantees
the connection is closed once on every exit path.
"""

import logging
import signal
import socket
import sys
import threading
from collections.abc import Callable
from typing import BinaryIO

from relaycat.config import NetcatConfig, Protocol
from relaycat.errors import HandshakeError, TransferError
from relaycat.logging_config import track_error
from relaycat.netcat import platforms
from relaycat.netcat.core import Address, ConnectionFactory, TCPListener, UDPListener
from relaycat.netcat.encoding import transcode
from relaycat.netcat.platforms import PlatformProfile
from relaycat.netcat.pump import DuplexPump
from relaycat.netcat.shell import ShellBridge, run_command

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = ("SIGHUP", "SIGINT", "SIGTERM", "SIGQUIT")


def format_peer(addr: Address) -> str:
    host, port = addr[0], addr[1]
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


class Session:
    """One connection plus the shell attached to it, if any."""

    def __init__(self, conn, peer: str):
        self.conn = conn
        self.peer = peer
        self.bridge: ShellBridge | None = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the connection. Later calls are no-ops."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            # Wakes any thread still blocked reading this connection
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.conn.close()
        except OSError as e:
            logger.debug(f"Close {self.peer} failed: {e}")
        logger.info(f"Closed: {self.peer}")

    def cancel(self) -> None:
        """End the session from outside: kill the shell, close the connection."""
        if self.bridge is not None:
            self.bridge.cancel()
        self.close()


class SessionController:
    """
    Top-level orchestration for dial and listen modes.

    Usage:
        controller = SessionController(config)
        install_shutdown_handler(controller.shutdown)
        controller.run()
    """

    def __init__(
        self,
        config: NetcatConfig,
        factory: ConnectionFactory | None = None,
        profile: PlatformProfile | None = None,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
    ):
        self.config = config
        self.factory = factory or ConnectionFactory(config)
        self.profile = profile or platforms.resolve()
        self.stdin = stdin
        self.stdout = stdout

        self._admission = threading.BoundedSemaphore(config.max_connections)
        self._sessions: set[Session] = set()
        self._workers: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._listener: TCPListener | UDPListener | None = None
        self._shutdown = threading.Event()

    @property
    def listener(self) -> TCPListener | UDPListener | None:
        with self._lock:
            return self._listener

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    def run(self) -> None:
        """
        Run the configured mode to completion.

        Raises:
            DialError, ListenSetupError: fatal startup failures
        """
        if not self.config.listen:
            self.dial()
        elif self.config.protocol == Protocol.UDP:
            self.serve_udp()
        else:
            self.serve_tcp()

    # Dial

    def dial(self) -> None:
        conn = self.factory.dial()
        peer = self.config.address

        if self.config.zero_io:
            logger.info(f"Connection to {peer} succeeded")
            Session(conn, peer).close()
            return

        self.handle(conn, peer)

    # TCP listen

    def serve_tcp(self) -> None:
        """Accept until the listener is closed; each connection gets its own thread."""
        listener = self.factory.listen_tcp()
        self._attach_listener(listener)

        for sock, addr in listener:
            self.dispatch(listener, sock, addr)

    def dispatch(self, listener: TCPListener, sock, addr: Address) -> threading.Thread | None:
        """Admit a connection and start its handler, or reject it when at capacity."""
        peer = format_peer(addr)
        if not self._admission.acquire(blocking=False):
            logger.warning(f"Rejected {peer}: {self.config.max_connections} connections active")
            sock.close()
            return None

        worker = threading.Thread(
            target=self._serve_connection,
            args=(listener, sock, peer),
            name=f"conn-{peer}",
            daemon=True,
        )
        with self._lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(worker)
        worker.start()
        return worker

    def _serve_connection(self, listener: TCPListener, sock, peer: str) -> None:
        try:
            try:
                conn = listener.secure(sock)
            except HandshakeError as e:
                track_error("handshake", f"{peer}: {e}", e.__cause__)
                return
            self.factory.tune(conn)
            self.handle(conn, peer)
        finally:
            self._admission.release()

    # UDP listen

    def serve_udp(self) -> None:
        listener = self.factory.listen_udp()
        self._attach_listener(listener)
        listener.serve(self.handle_datagram)

    def handle_datagram(self, data: bytes, addr: Address) -> bytes | None:
        """Execute (shell mode) or echo a datagram; the return value is the reply."""
        if self.config.shell:
            command = data.strip().decode("utf-8", errors="replace")
            if not command:
                return None
            logger.info(f"Executing {command!r} for {format_peer(addr)}")
            output = run_command(self.profile, command, self.config.session_timeout)
            if self.profile.needs_transcoding:
                output = transcode(output, self.config.console_encoding)
            return output

        out = self.stdout if self.stdout is not None else sys.stdout.buffer
        try:
            out.write(data)
            out.flush()
        except (OSError, ValueError) as e:
            raise TransferError(f"Write to stdout failed: {e}") from e
        return data

    # Sessions

    def handle(self, conn, peer: str) -> None:
        """Run one session to completion and close its connection."""
        session = Session(conn, peer)
        with self._lock:
            self._sessions.add(session)
        if self._shutdown.is_set():
            session.close()
        try:
            if session.closed:
                return
            if self.config.shell:
                session.bridge = ShellBridge(self.config, self.profile)
                session.bridge.run(conn)
            else:
                pump = DuplexPump(conn, self.config, stdin=self.stdin, stdout=self.stdout)
                pump.run()
        finally:
            session.close()
            with self._lock:
                self._sessions.discard(session)

    def _attach_listener(self, listener: TCPListener | UDPListener) -> None:
        with self._lock:
            self._listener = listener
        if self._shutdown.is_set():
            listener.close()

    def wait(self, timeout: float | None = None) -> None:
        """Wait for dispatched connection handlers to finish."""
        with self._lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout)

    def shutdown(self) -> None:
        """Close the listener and every active session."""
        self._shutdown.set()
        with self._lock:
            listener = self._listener
            sessions = list(self._sessions)
        if listener is not None:
            listener.close()
        for session in sessions:
            session.cancel()


def install_shutdown_handler(on_shutdown: Callable[[], None]) -> list[signal.Signals]:
    """
    Route termination signals to on_shutdown, then exit the process.

    Must be called from the main thread. on_shutdown runs on its own
    non-daemon thread: the handler may interrupt the main thread while
    it holds a lock on_shutdown needs, and the interpreter waits for
    that thread after SystemExit has unwound the main thread.

    Returns:
        The signals that were installed (platform dependent)
    """
    def handler(signum, frame):
        logger.info(f"Exited ({signal.Signals(signum).name})")
        threading.Thread(target=on_shutdown, name="shutdown").start()
        raise SystemExit(0)

    installed = []
    for name in SHUTDOWN_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        signal.signal(sig, handler)
        installed.append(sig)
    return installed
