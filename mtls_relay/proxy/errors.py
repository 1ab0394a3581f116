"""
Upstream failure classification.

Maps credential and transport failures onto a small fixed set of categories,
each with a human-actionable message and the raw error identifier needed for
diagnosis. Anything unrecognised lands in ``FailureKind.OTHER`` with the
original message preserved.
"""

import enum
import errno
import ssl
from typing import Iterator, Optional

import httpx

from ..config import UPSTREAM_NAME
from ..identity import CredentialError, CredentialErrorKind


class FailureKind(str, enum.Enum):
    BAD_PASSPHRASE = "bad_passphrase"
    INVALID_CERTIFICATE = "invalid_certificate"
    UNTRUSTED_UPSTREAM = "untrusted_upstream"
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    OTHER = "other"


FAILURE_MESSAGES = {
    FailureKind.BAD_PASSPHRASE: "Certificate password is incorrect",
    FailureKind.INVALID_CERTIFICATE: "Certificate file is corrupted or invalid",
    FailureKind.UNTRUSTED_UPSTREAM: f"{UPSTREAM_NAME} server certificate failed trust store validation",
    FailureKind.CONNECTION_REFUSED: f"Connection refused by {UPSTREAM_NAME} server",
    FailureKind.TIMEOUT: f"Connection to {UPSTREAM_NAME} timed out",
}

# Identifiers callers already match on for certificate problems
CREDENTIAL_ERROR_CODES = {
    CredentialErrorKind.BAD_PASSPHRASE: "ERR_OSSL_PKCS12_MAC_VERIFY_FAILURE",
    CredentialErrorKind.INVALID_CERTIFICATE: "ERR_OSSL_PKCS12_PKCS12_PFX_PDU_PARSING_ERROR",
}


class UpstreamFailure(Exception):
    """
    A classified failure to reach or talk to the upstream gateway.

    Attributes:
        kind: Failure category
        details: Human-readable message for the caller
        code: Raw underlying error identifier
    """

    def __init__(self, kind: FailureKind, details: str, code: str):
        super().__init__(details)
        self.kind = kind
        self.details = details
        self.code = code

    def __repr__(self) -> str:
        return f"UpstreamFailure(kind={self.kind.value!r}, code={self.code!r})"


def _iter_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield exc, its causes/contexts and members of any exception groups."""
    pending = [exc]
    seen = set()
    while pending:
        current = pending.pop(0)
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        pending.extend(getattr(current, "exceptions", ()) or ())
        pending.append(current.__cause__ or current.__context__)


def _errno_name(exc: BaseException) -> Optional[str]:
    if isinstance(exc, OSError) and exc.errno is not None:
        return errno.errorcode.get(exc.errno)
    return None


def from_credential_error(exc: CredentialError) -> UpstreamFailure:
    kind = FailureKind(exc.kind.value)
    return UpstreamFailure(kind, FAILURE_MESSAGES[kind], CREDENTIAL_ERROR_CODES[exc.kind])


def classify_transport_error(exc: BaseException) -> UpstreamFailure:
    """
    Classify an exception raised while talking to the upstream.

    Args:
        exc: Usually an ``httpx.TransportError``; causes are inspected too

    Returns:
        UpstreamFailure carrying message and raw code
    """
    chain = list(_iter_chain(exc))

    for item in chain:
        if isinstance(item, CredentialError):
            return from_credential_error(item)

    for item in chain:
        if isinstance(item, ssl.SSLCertVerificationError):
            code = getattr(item, "reason", None) or "CERTIFICATE_VERIFY_FAILED"
            return UpstreamFailure(
                FailureKind.UNTRUSTED_UPSTREAM,
                FAILURE_MESSAGES[FailureKind.UNTRUSTED_UPSTREAM],
                code,
            )

    for item in chain:
        if isinstance(item, ConnectionRefusedError) or _errno_name(item) == "ECONNREFUSED":
            return UpstreamFailure(
                FailureKind.CONNECTION_REFUSED,
                FAILURE_MESSAGES[FailureKind.CONNECTION_REFUSED],
                "ECONNREFUSED",
            )

    for item in chain:
        if isinstance(item, (httpx.TimeoutException, TimeoutError)) or _errno_name(item) == "ETIMEDOUT":
            return UpstreamFailure(
                FailureKind.TIMEOUT,
                FAILURE_MESSAGES[FailureKind.TIMEOUT],
                "ETIMEDOUT",
            )

    code = None
    for item in chain:
        code = _errno_name(item)
        if code is None and isinstance(item, ssl.SSLError):
            code = getattr(item, "reason", None) or "SSL_ERROR"
        if code:
            break

    details = str(exc) or type(exc).__name__
    return UpstreamFailure(FailureKind.OTHER, details, code or type(exc).__name__)
