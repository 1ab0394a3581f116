"""
Client Identity Loader
======================

Decodes the base64 PKCS#12 bundle and its passphrase from configuration into
an in-memory identity used for outbound mutual-TLS handshakes.

Loading never raises: a missing or malformed value is recorded as
``load_error`` and the relay keeps running so that /health can report why it
is degraded. Opening the bundle (which needs the passphrase) happens when a
TLS context is built, and failures there are tagged so the forwarding engine
can return an actionable message.
"""

import base64
import binascii
import enum
import logging
import os
import ssl
import tempfile
from typing import Optional

import certifi
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from ..config import Settings

logger = logging.getLogger(__name__)


class CredentialErrorKind(str, enum.Enum):
    BAD_PASSPHRASE = "bad_passphrase"
    INVALID_CERTIFICATE = "invalid_certificate"


class CredentialError(Exception):
    """Raised when the PKCS#12 bundle cannot be opened or used."""

    def __init__(self, kind: CredentialErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class Credential(BaseModel):
    """
    Complete client identity: decoded bundle plus passphrase.

    Only exists when both halves are present. The bundle is kept out of
    ``repr`` and the passphrase is a ``SecretStr`` so neither ends up in logs.
    """

    model_config = ConfigDict(frozen=True)

    bundle: bytes = Field(..., repr=False, min_length=1)
    passphrase: SecretStr


class ClientIdentity(BaseModel):
    """
    Outcome of loading certificate configuration at startup.

    Attributes:
        bundle: Decoded PKCS#12 bytes, or None if missing/undecodable
        passphrase: Bundle passphrase, or None if unset
        load_error: Why the identity is incomplete, if it is
    """

    model_config = ConfigDict(frozen=True)

    bundle: Optional[bytes] = Field(default=None, repr=False)
    passphrase: Optional[SecretStr] = None
    load_error: Optional[str] = None

    @property
    def has_certificate(self) -> bool:
        return self.bundle is not None

    @property
    def has_password(self) -> bool:
        return self.passphrase is not None

    @property
    def cert_size(self) -> int:
        return len(self.bundle) if self.bundle is not None else 0

    @property
    def credential(self) -> Optional[Credential]:
        if self.bundle is None or self.passphrase is None:
            return None
        return Credential(bundle=self.bundle, passphrase=self.passphrase)


def decode_bundle(encoded: str) -> bytes:
    """
    Strictly decode a base64 bundle, ignoring embedded whitespace.

    Raises:
        ValueError: If the value is not valid base64 or decodes to nothing
    """
    compact = "".join(encoded.split())
    try:
        decoded = base64.b64decode(compact, validate=True)
    except binascii.Error as e:
        raise ValueError(str(e)) from e

    if not decoded:
        raise ValueError("value decodes to zero bytes")

    return decoded


def load_identity(settings: Settings) -> ClientIdentity:
    """
    Build the process-wide client identity from settings.

    Args:
        settings: Application settings (read once at startup)

    Returns:
        ClientIdentity, possibly incomplete with ``load_error`` set
    """
    bundle: Optional[bytes] = None
    load_error: Optional[str] = None

    if settings.OCES3_CERTIFICATE_BASE64:
        try:
            bundle = decode_bundle(settings.OCES3_CERTIFICATE_BASE64)
            logger.info(f"Certificate loaded, size: {len(bundle)} bytes")
        except ValueError as e:
            load_error = f"Failed to decode certificate: {e}"
            logger.error(load_error)
    else:
        load_error = "OCES3_CERTIFICATE_BASE64 not set"
        logger.error(load_error)

    passphrase: Optional[SecretStr] = None
    if settings.OCES3_CERTIFICATE_PASSWORD:
        passphrase = SecretStr(settings.OCES3_CERTIFICATE_PASSWORD)
    else:
        # Keep an existing bundle error
        load_error = load_error or "OCES3_CERTIFICATE_PASSWORD not set"
        logger.error("OCES3_CERTIFICATE_PASSWORD not set")

    identity = ClientIdentity(bundle=bundle, passphrase=passphrase, load_error=load_error)

    if identity.credential is not None:
        probe_credential(identity.credential)

    return identity


def probe_credential(credential: Credential) -> None:
    """Log a warning if the bundle cannot be opened; never raises."""
    try:
        _open_bundle(credential)
    except CredentialError as e:
        logger.warning(
            f"Certificate bundle could not be opened at startup: {e}",
            extra={"kind": e.kind.value},
        )


def _open_bundle(credential: Credential):
    password = credential.passphrase.get_secret_value().encode("utf-8")
    try:
        key, cert, chain = pkcs12.load_key_and_certificates(credential.bundle, password)
    except ValueError as e:
        # cryptography reports "Invalid password or PKCS12 data" once the
        # container parses but the MAC check fails
        if "password" in str(e).lower():
            raise CredentialError(CredentialErrorKind.BAD_PASSPHRASE, str(e)) from e
        raise CredentialError(CredentialErrorKind.INVALID_CERTIFICATE, str(e)) from e

    if key is None or cert is None:
        raise CredentialError(
            CredentialErrorKind.INVALID_CERTIFICATE,
            "PKCS#12 bundle does not contain both a private key and a certificate",
        )

    return key, cert, chain or []


def build_client_ssl_context(credential: Credential) -> ssl.SSLContext:
    """
    Create a client TLS context presenting the credential.

    The context verifies the upstream against the certifi trust store with
    hostname checking and refuses anything older than TLS 1.2.

    Raises:
        CredentialError: If the bundle cannot be opened or loaded
    """
    key, cert, chain = _open_bundle(credential)
    password = credential.passphrase.get_secret_value().encode("utf-8")

    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(password),
    )
    pem += cert.public_bytes(serialization.Encoding.PEM)
    for extra_cert in chain:
        pem += extra_cert.public_bytes(serialization.Encoding.PEM)

    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=certifi.where())
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    try:
        _load_cert_chain_from_memory(context, pem, password)
    except ssl.SSLError as e:
        raise CredentialError(CredentialErrorKind.INVALID_CERTIFICATE, str(e)) from e

    return context


def _load_cert_chain_from_memory(context: ssl.SSLContext, pem: bytes, password: bytes) -> None:
    """
    Load key and chain PEM into the context without touching the filesystem.

    ``load_cert_chain`` only accepts paths, so the PEM goes into an anonymous
    memory file and is read back through /proc. Platforms without
    ``memfd_create`` get a temp file holding the encrypted key instead.
    """
    if not hasattr(os, "memfd_create"):
        with tempfile.NamedTemporaryFile(suffix=".pem") as handle:
            handle.write(pem)
            handle.flush()
            context.load_cert_chain(certfile=handle.name, password=password)
        return

    fd = os.memfd_create("oces3", os.MFD_CLOEXEC)
    try:
        os.write(fd, pem)
        context.load_cert_chain(certfile=f"/proc/self/fd/{fd}", password=password)
    finally:
        os.close(fd)
