"""
relaycat - netcat-style network relay

Dial or listen on TCP/UDP, bridge connections to a shell, wrap them
in ephemeral TLS, or relay bytes to and from standard input/output.
"""

__version__ = "0.1.0"
__author__ = "relaycat contributors"
