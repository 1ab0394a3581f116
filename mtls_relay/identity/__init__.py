"""
Identity Package

Loads the OCES3 client certificate from configuration and turns it into a
TLS context for outbound mutual-TLS requests.
"""

from .loader import (
    ClientIdentity,
    Credential,
    CredentialError,
    CredentialErrorKind,
    build_client_ssl_context,
    load_identity,
)

__all__ = [
    "ClientIdentity",
    "Credential",
    "CredentialError",
    "CredentialErrorKind",
    "build_client_ssl_context",
    "load_identity",
]
