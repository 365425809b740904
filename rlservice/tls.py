"""Building TLS contexts from certificate files."""

from __future__ import annotations

import enum
import ssl
from pathlib import Path


class CAType(enum.Enum):
    """Which peer the CA certificate is used to verify."""

    CLIENT_CA = enum.auto()
    SERVER_CA = enum.auto()


class TlsConfigError(Exception):
    """A TLS key pair or CA certificate could not be loaded."""


def tls_config_from_files(
    cert_file: str,
    key_file: str,
    ca_cert_file: str,
    ca_type: CAType,
    skip_hostname_verification: bool = False,
) -> ssl.SSLContext:
    """Build an SSL context from the given files.

    A ``CLIENT_CA`` context is a server-side context that verifies clients;
    a ``SERVER_CA`` context is a client-side context that verifies servers.
    Skipping hostname verification still verifies the certificate chain.
    """
    if ca_type is CAType.CLIENT_CA:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        purpose = ssl.Purpose.CLIENT_AUTH
    else:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        purpose = ssl.Purpose.SERVER_AUTH
        if skip_hostname_verification:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_REQUIRED
        context.load_default_certs(purpose)

    if cert_file and key_file:
        try:
            context.load_cert_chain(cert_file, key_file)
        except OSError as exc:
            raise TlsConfigError(
                f"failed to load TLS key pair ({cert_file},{key_file}): {exc}"
            ) from exc

    if ca_cert_file:
        try:
            pem = Path(ca_cert_file).read_bytes().decode("latin-1")
        except OSError as exc:
            raise TlsConfigError(f"failed to read file: {ca_cert_file}: {exc}") from exc
        if ca_type is CAType.CLIENT_CA:
            context.load_default_certs(purpose)
        try:
            context.load_verify_locations(cadata=pem)
        except (ssl.SSLError, ValueError) as exc:
            raise TlsConfigError(
                f"failed to load the provided TLS CA certificate: {ca_cert_file}"
            ) from exc

    return context