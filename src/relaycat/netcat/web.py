"""
Static-file web mode: serve a directory over HTTP.
"""

import logging
from functools import partial
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

from relaycat.config import NetcatConfig
from relaycat.errors import ListenSetupError

logger = logging.getLogger(__name__)


class QuietHandler(SimpleHTTPRequestHandler):
    """Directory handler that logs requests through the package logger."""

    def log_message(self, format, *args):
        logger.info(f"{self.address_string()} - {format % args}")


class WebServer:
    """
    Usage:
        server = WebServer(NetcatConfig(port=8080, web_root="public"))
        server.serve()      # until close()
    """

    def __init__(self, config: NetcatConfig):
        self.config = config
        self.root = Path(config.web_root)
        self._server: ThreadingHTTPServer | None = None

    def bind(self) -> None:
        """
        Raises:
            ListenSetupError: root missing or socket could not be bound
        """
        if not self.root.is_dir():
            raise ListenSetupError(f"Web root is not a directory: {self.root}")

        handler = partial(QuietHandler, directory=str(self.root))
        try:
            self._server = ThreadingHTTPServer((self.config.host, self.config.port), handler)
        except OSError as e:
            raise ListenSetupError(f"Failed to bind {self.config.address}: {e}") from e
        self._server.daemon_threads = True

        logger.info(f"Listening web on: {self.config.host}:{self.address[1]}, path: {self.root}")

    @property
    def address(self) -> tuple:
        if self._server is None:
            raise ListenSetupError("Web server not bound")
        return self._server.server_address

    def serve(self) -> None:
        if self._server is None:
            self.bind()
        try:
            self._server.serve_forever(poll_interval=0.5)
        finally:
            self._server.server_close()

    def close(self) -> None:
        """Stop serve(); safe to call from another thread."""
        if self._server is not None:
            self._server.shutdown()
