"""
Ephemeral TLS identity and TLS context construction.

The listener's certificate is generated in memory at first use and
never written to persistent storage.
"""

import datetime
import ipaddress
import logging
import os
import socket
import ssl
import tempfile
import threading
import warnings
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from relaycat.errors import CertificateGenerationError

logger = logging.getLogger(__name__)

# ECDHE/AES-GCM first; applies to TLS 1.2 and below (1.3 suites are fixed by OpenSSL)
CIPHER_PREFERENCE = ":".join([
    "ECDHE-ECDSA-AES128-GCM-SHA256",
    "ECDHE-RSA-AES128-GCM-SHA256",
    "ECDHE-ECDSA-AES256-GCM-SHA384",
    "ECDHE-RSA-AES256-GCM-SHA384",
    "ECDHE-ECDSA-CHACHA20-POLY1305",
    "ECDHE-RSA-CHACHA20-POLY1305",
    "ECDHE-RSA-AES128-SHA",
    "ECDHE-RSA-AES256-SHA",
])


@dataclass
class Certificate:
    """An ephemeral key pair and its self-signed certificate."""
    cert_pem: bytes
    key_pem: bytes
    not_before: datetime.datetime
    not_after: datetime.datetime
    san: list[str] = field(default_factory=list)

    @property
    def parsed(self) -> x509.Certificate:
        return x509.load_pem_x509_certificate(self.cert_pem)


class CertificateProvider:
    """
    Generates one self-signed certificate per process, on first use.

    Usage:
        provider = CertificateProvider()
        context = provider.server_context()
    """

    def __init__(
        self,
        hostname: str | None = None,
        organization: str = "relaycat",
        locality: str = "Local",
        key_size: int = 2048,
        validity_days: int = 365,
    ):
        self.hostname = hostname or socket.gethostname()
        self.organization = organization
        self.locality = locality
        self.key_size = key_size
        self.validity_days = validity_days
        self._certificate: Certificate | None = None
        self._lock = threading.Lock()

    def get(self) -> Certificate:
        """Return the process certificate, generating it on first call."""
        with self._lock:
            if self._certificate is None:
                self._certificate = self.generate()
            return self._certificate

    def generate(self) -> Certificate:
        """
        Generate a fresh RSA key and self-signed certificate.

        Raises:
            CertificateGenerationError: on any key, signing or encoding failure
        """
        try:
            key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)

            name = x509.Name([
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
                x509.NameAttribute(NameOID.LOCALITY_NAME, self.locality),
                x509.NameAttribute(NameOID.COMMON_NAME, self.hostname[:64]),
            ])

            dns_names = [self.hostname]
            if "localhost" not in dns_names:
                dns_names.append("localhost")
            san = x509.SubjectAlternativeName(
                [x509.DNSName(n) for n in dns_names] + [
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                    x509.IPAddress(ipaddress.ip_address("::1")),
                ]
            )

            not_before = datetime.datetime.now(datetime.timezone.utc)
            not_after = not_before + datetime.timedelta(days=self.validity_days)

            cert = (
                x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(not_before)
                .not_valid_after(not_after)
                .add_extension(san, critical=False)
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.ExtendedKeyUsage([x509.oid.ExtendedKeyUsageOID.SERVER_AUTH]),
                    critical=False,
                )
                .sign(key, hashes.SHA256())
            )

            cert_pem = cert.public_bytes(serialization.Encoding.PEM)
            key_pem = key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.TraditionalOpenSSL,
                serialization.NoEncryption(),
            )
        except Exception as e:
            raise CertificateGenerationError(f"Certificate generation failed: {e}") from e

        logger.info(f"Generated ephemeral certificate for {', '.join(dns_names)} "
                    f"(valid until {not_after:%Y-%m-%d})")

        return Certificate(
            cert_pem=cert_pem,
            key_pem=key_pem,
            not_before=not_before,
            not_after=not_after,
            san=dns_names + ["127.0.0.1", "::1"],
        )

    def server_context(self) -> ssl.SSLContext:
        """Build a server-side TLS context presenting the process certificate."""
        certificate = self.get()

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        _apply_protocol_policy(context)
        try:
            load_certificate(context, certificate)
        except (OSError, ssl.SSLError) as e:
            raise CertificateGenerationError(f"Failed to load certificate: {e}") from e
        return context


def client_context(verify: bool = False) -> ssl.SSLContext:
    """
    Build a client-side TLS context.

    Verification is skipped unless requested: the peer usually presents
    an ephemeral self-signed certificate.
    """
    context = ssl.create_default_context()
    _apply_protocol_policy(context)

    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        logger.warning("TLS certificate verification disabled")

    return context


def _apply_protocol_policy(context: ssl.SSLContext) -> None:
    """TLS 1.0 through 1.3 with a fixed cipher preference."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DeprecationWarning)
        try:
            context.minimum_version = ssl.TLSVersion.TLSv1
        except (ValueError, ssl.SSLError):
            logger.debug("TLS 1.0 not available, keeping library minimum")
    context.maximum_version = ssl.TLSVersion.TLSv1_3
    context.set_ciphers(CIPHER_PREFERENCE)


def load_certificate(context: ssl.SSLContext, certificate: Certificate) -> None:
    """
    Load an in-memory certificate into a context.

    The ssl module only loads key material from a path, so the PEM is
    exposed through an anonymous memory file where the OS has one,
    otherwise through a private temporary directory removed right after.
    """
    bundle = certificate.cert_pem + certificate.key_pem

    if hasattr(os, "memfd_create") and Path("/proc/self/fd").is_dir():
        fd = os.memfd_create("relaycat-cert")
        try:
            os.write(fd, bundle)
            context.load_cert_chain(f"/proc/self/fd/{fd}")
        finally:
            os.close(fd)
        return

    with tempfile.TemporaryDirectory(prefix="relaycat-") as tmp:
        path = Path(tmp) / "cert.pem"
        path.write_bytes(bundle)
        os.chmod(path, 0o600)
        context.load_cert_chain(str(path))
