"""
Shared fixtures for relay tests.

Certificate bundles are real PKCS#12 files generated once per session, and
the SKAT gateway is replaced by an httpx.MockTransport that records every
outbound request it sees.
"""

import asyncio
import base64
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

from mtls_relay.config import Settings
from mtls_relay.main import create_app

TEST_PASSWORD = "correct horse battery staple"
TEST_API_KEY = "abc"


def generate_pkcs12_bundle(password: str) -> bytes:
    """Create a self-signed client certificate packed as PKCS#12."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "DK"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Employer ApS"),
        x509.NameAttribute(NameOID.COMMON_NAME, "relay-test"),
    ])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    return pkcs12.serialize_key_and_certificates(
        name=b"relay-test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode("utf-8")),
    )


@pytest.fixture(scope="session")
def pkcs12_bundle() -> bytes:
    return generate_pkcs12_bundle(TEST_PASSWORD)


@pytest.fixture(scope="session")
def pkcs12_base64(pkcs12_bundle) -> str:
    return base64.b64encode(pkcs12_bundle).decode("ascii")


@pytest.fixture
def make_settings(pkcs12_base64) -> Callable[..., Settings]:
    """Build Settings from explicit values only (no .env, no ambient env)."""

    def _make(**overrides) -> Settings:
        values = {
            "OCES3_CERTIFICATE_BASE64": pkcs12_base64,
            "OCES3_CERTIFICATE_PASSWORD": TEST_PASSWORD,
            "PROXY_API_KEY": TEST_API_KEY,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def mock_settings(make_settings) -> Settings:
    return make_settings()


class UpstreamRecorder:
    """
    Stand-in for the SKAT gateway; records requests, replays a canned reply.

    The reply body is served as an unread stream, exactly as bytes would
    arrive off the wire. ``delay`` holds each exchange open and
    ``max_in_flight`` records how many overlapped.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.reply(200, b"<ok/>", {"Content-Type": "text/xml"})

    def reply(self, status_code: int, content: bytes, headers: Optional[dict] = None) -> None:
        self.status_code = status_code
        self.content = content
        self.headers = dict(headers or {})

    async def handler(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
        finally:
            self.in_flight -= 1
        return httpx.Response(
            self.status_code,
            headers=self.headers,
            stream=httpx.ByteStream(self.content),
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def upstream() -> UpstreamRecorder:
    return UpstreamRecorder()


@pytest.fixture
def make_client(upstream):
    """Create a TestClient (lifespan running) for the given settings."""
    clients = []

    def _make(settings: Settings) -> TestClient:
        app = create_app(settings=settings, transport=upstream.transport)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client, mock_settings) -> TestClient:
    return make_client(mock_settings)


@pytest.fixture
def auth_headers():
    """Standard headers for an authorized SOAP forward."""
    return {
        "X-API-Key": TEST_API_KEY,
        "Content-Type": "text/xml; charset=utf-8",
        "SOAPAction": "urn:IndberetningService/Indberet",
    }
