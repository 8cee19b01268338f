"""
Connection establishment: dialing with retry, TCP and UDP listeners.

Provides:
- Dial with linear-backoff retry and optional TLS (no server verification by default)
- Keepalive and zero-linger tuning
- TCP accept loop with per-connection TLS handshake
- UDP datagram loop with per-datagram replies
"""

import logging
import socket
import ssl
import struct
import time
from collections.abc import Callable, Iterator

from relaycat.config import NetcatConfig, Protocol
from relaycat.errors import DialError, HandshakeError, ListenSetupError, NetcatError
from relaycat.logging_config import track_error
from relaycat.netcat.certs import CertificateProvider, client_context

logger = logging.getLogger(__name__)

# Largest datagram read per receive
UDP_BUFFER_SIZE = 64 * 1024

# Largest payload a UDP reply may carry
UDP_MAX_PAYLOAD = 65507

Address = tuple


def _family_for(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


class ConnectionFactory:
    """
    Builds connections from a NetcatConfig.

    Usage:
        factory = ConnectionFactory(NetcatConfig(host="example.com", port=443, tls=True))
        conn = factory.dial()

        listener = factory.listen_tcp()
        for sock, addr in listener:
            conn = listener.secure(sock)
    """

    def __init__(
        self,
        config: NetcatConfig,
        certificates: CertificateProvider | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.certificates = certificates or CertificateProvider()
        self._sleep = sleep

    def dial(self) -> socket.socket:
        """
        Connect to the configured host, retrying up to config.retries times.

        Attempt N (0-based) is preceded by an N second pause.

        Returns:
            Connected (and tuned, possibly TLS-wrapped) socket

        Raises:
            DialError: every attempt failed; carries the last failure
        """
        attempts = self.config.retries + 1
        context = None
        if self.config.tls:
            context = client_context(verify=self.config.tls_verify)

        last_error: BaseException | None = None
        for attempt in range(attempts):
            if attempt:
                logger.info(f"Retrying in {attempt}s (attempt {attempt + 1}/{attempts})")
                self._sleep(attempt)
            try:
                sock = self._dial_once(context)
            except (OSError, ssl.SSLError) as e:
                last_error = e
                logger.warning(f"Dial {self.config.address} failed "
                               f"(attempt {attempt + 1}/{attempts}): {e}")
                continue

            self.tune(sock)
            logger.info(f"Dialed host: {self.config.protocol.value}://{self.config.address}")
            return sock

        raise DialError(
            f"Could not connect to {self.config.address} after {attempts} attempt(s): {last_error}",
            attempts=attempts,
            last_error=last_error,
        ) from last_error

    def _dial_once(self, context: ssl.SSLContext | None) -> socket.socket:
        """One bounded connection attempt."""
        host, port = self.config.host, self.config.port
        timeout = self.config.connect_timeout

        if self.config.protocol == Protocol.UDP:
            family, socktype, proto, _, sockaddr = socket.getaddrinfo(
                host, port, type=socket.SOCK_DGRAM
            )[0]
            sock = socket.socket(family, socktype, proto)
            try:
                sock.connect(sockaddr)
            except OSError:
                sock.close()
                raise
            return sock

        sock = socket.create_connection((host, port), timeout=timeout)
        if context is not None:
            try:
                logger.debug("Initiating TLS handshake")
                sock = context.wrap_socket(sock, server_hostname=host)
            except (OSError, ssl.SSLError):
                sock.close()
                raise
            logger.info(f"TLS established: {sock.version()}, {sock.cipher()[0]}")

        sock.settimeout(None)
        return sock

    def tune(self, sock: socket.socket) -> None:
        """Enable keepalive and zero-linger close on TCP sockets when configured."""
        if not self.config.keepalive or sock.type != socket.SOCK_STREAM:
            return

        interval = int(self.config.keepalive_interval)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            if hasattr(socket, "TCP_KEEPIDLE"):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, interval)
            elif hasattr(socket, "TCP_KEEPALIVE"):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, interval)
            if hasattr(socket, "TCP_KEEPINTVL"):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, interval)
            # Zero linger: close() resets instead of lingering in TIME_WAIT
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        except OSError as e:
            logger.debug(f"Socket tuning failed: {e}")

    def listen_tcp(self) -> "TCPListener":
        """
        Bind a TCP listener.

        With TLS enabled the certificate is generated here, before the
        first accept, so generation failures surface at startup.
        """
        context = self.certificates.server_context() if self.config.tls else None
        listener = TCPListener(self.config, context)
        listener.bind()
        return listener

    def listen_udp(self) -> "UDPListener":
        """Bind a UDP listener."""
        listener = UDPListener(self.config)
        listener.bind()
        return listener


class TCPListener:
    """
    Accept loop over a bound TCP socket.

    Iterating yields raw (socket, address) pairs until close() is
    called; secure() performs the server-side TLS handshake when
    enabled.
    """

    def __init__(
        self,
        config: NetcatConfig,
        ssl_context: ssl.SSLContext | None = None,
        poll_interval: float = 0.5,
    ):
        self.config = config
        self.ssl_context = ssl_context
        self.poll_interval = poll_interval
        self._socket: socket.socket | None = None
        self._closed = False

    def bind(self) -> None:
        """
        Raises:
            ListenSetupError: socket could not be bound
        """
        try:
            self._socket = socket.socket(_family_for(self.config.host), socket.SOCK_STREAM)
            self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._socket.bind((self.config.host, self.config.port))
            self._socket.listen(128)
            self._socket.settimeout(self.poll_interval)
        except PermissionError as e:
            self._abort()
            raise ListenSetupError(f"Permission denied for port {self.config.port}") from e
        except OSError as e:
            self._abort()
            raise ListenSetupError(f"Failed to bind {self.config.address}: {e}") from e

        logger.info(f"Listening on: tcp://{self.config.host}:{self.address[1]}"
                    f"{' (tls)' if self.ssl_context else ''}")

    def _abort(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    @property
    def address(self) -> Address:
        if self._socket is None:
            raise ListenSetupError("Listener not bound")
        return self._socket.getsockname()

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[tuple[socket.socket, Address]]:
        if self._socket is None:
            raise ListenSetupError("Listener not bound")

        while not self._closed:
            try:
                client, addr = self._socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._closed:
                    break
                track_error("accept", f"Accept failed: {e}", e)
                # Persistent failures (EMFILE) would otherwise spin
                time.sleep(self.poll_interval)
                continue

            logger.info(f"Connection received: {addr[0]}:{addr[1]}")
            yield client, addr

        logger.info("Listener closed")

    def secure(self, client: socket.socket) -> socket.socket:
        """
        Complete the server-side TLS handshake on an accepted socket.

        Returns:
            The TLS socket, or the socket itself when TLS is disabled

        Raises:
            HandshakeError: handshake failed; the socket has been closed
        """
        if self.ssl_context is None:
            return client

        client.settimeout(self.config.connect_timeout)
        try:
            logger.debug("Starting TLS handshake")
            tls_client = self.ssl_context.wrap_socket(client, server_side=True)
        except (OSError, ssl.SSLError) as e:
            client.close()
            raise HandshakeError(f"TLS handshake failed: {e}") from e

        tls_client.settimeout(None)
        logger.debug(f"TLS established: {tls_client.version()}")
        return tls_client

    def close(self) -> None:
        """Stop accepting. Ends iteration without an error."""
        if self._closed:
            return
        self._closed = True
        if self._socket is not None:
            try:
                self._socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._socket.close()


DatagramHandler = Callable[[bytes, Address], "bytes | None"]


class UDPListener:
    """
    Connectionless receive loop.

    Every datagram is independent: the handler's return value, if any,
    is sent back to the datagram's source address.
    """

    def __init__(self, config: NetcatConfig, poll_interval: float = 0.5):
        self.config = config
        self.poll_interval = poll_interval
        self._socket: socket.socket | None = None
        self._closed = False

    def bind(self) -> None:
        """
        Raises:
            ListenSetupError: socket could not be bound
        """
        try:
            self._socket = socket.socket(_family_for(self.config.host), socket.SOCK_DGRAM)
            self._socket.bind((self.config.host, self.config.port))
            self._socket.settimeout(self.poll_interval)
        except OSError as e:
            if self._socket is not None:
                self._socket.close()
                self._socket = None
            raise ListenSetupError(f"Failed to bind {self.config.address}: {e}") from e

        logger.info(f"Listening on: udp://{self.config.host}:{self.address[1]}")

    @property
    def address(self) -> Address:
        if self._socket is None:
            raise ListenSetupError("Listener not bound")
        return self._socket.getsockname()

    @property
    def closed(self) -> bool:
        return self._closed

    def serve(self, handler: DatagramHandler) -> None:
        """Receive datagrams until close() is called."""
        if self._socket is None:
            raise ListenSetupError("Listener not bound")

        while not self._closed:
            try:
                data, addr = self._socket.recvfrom(UDP_BUFFER_SIZE)
            except socket.timeout:
                continue
            except OSError as e:
                if self._closed:
                    break
                track_error("datagram", f"Receive failed: {e}", e)
                continue

            logger.info(f"Datagram received: {addr[0]}:{addr[1]} ({len(data)} bytes)")
            self._handle(handler, data, addr)

        logger.info("Closed udp listen")

    def _handle(self, handler: DatagramHandler, data: bytes, addr: Address) -> None:
        try:
            reply = handler(data, addr)
            if reply is None:
                return
            if len(reply) > UDP_MAX_PAYLOAD:
                logger.warning(f"Reply truncated from {len(reply)} to {UDP_MAX_PAYLOAD} bytes")
                reply = reply[:UDP_MAX_PAYLOAD]
            self._socket.sendto(reply, addr)
        except (OSError, ValueError, NetcatError) as e:
            track_error("datagram", f"Datagram from {addr[0]}:{addr[1]} failed: {e}", e)

    def close(self) -> None:
        """Stop receiving. Ends serve() without an error."""
        if self._closed:
            return
        self._closed = True
        if self._socket is not None:
            self._socket.close()
