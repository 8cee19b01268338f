"""
Netcat engine: dial/listen, TLS, shell bridging and byte relaying.
"""

from relaycat.netcat.certs import CertificateProvider
from relaycat.netcat.core import ConnectionFactory, TCPListener, UDPListener
from relaycat.netcat.encoding import EncodingAdapter
from relaycat.netcat.pump import DuplexPump
from relaycat.netcat.session import SessionController
from relaycat.netcat.shell import ShellBridge

__all__ = [
    "CertificateProvider",
    "ConnectionFactory",
    "DuplexPump",
    "EncodingAdapter",
    "SessionController",
    "ShellBridge",
    "TCPListener",
    "UDPListener",
]
