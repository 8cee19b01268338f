"""
Exceptions raised by the netcat engine.

Fatal classes (configuration, dial, listen setup, certificate
generation) propagate to the process boundary. The per-connection
classes are absorbed by the session layer.
"""


class NetcatError(Exception):
    """Base exception for netcat errors."""
    pass


class ConfigurationError(NetcatError):
    """Invalid configuration value."""
    pass


class DialError(NetcatError):
    """All dial attempts exhausted."""

    def __init__(self, message: str, attempts: int = 0, last_error: BaseException | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class ListenSetupError(NetcatError):
    """Bind or listener setup failed."""
    pass


class HandshakeError(NetcatError):
    """TLS handshake failed on an accepted connection."""
    pass


class TransferError(NetcatError):
    """Read or write failure on an established connection or local stream."""
    pass


class ShellExecutionError(NetcatError):
    """Shell could not be spawned or exited with a non-zero status."""
    pass


class CertificateGenerationError(ListenSetupError):
    """Ephemeral certificate could not be generated."""
    pass
