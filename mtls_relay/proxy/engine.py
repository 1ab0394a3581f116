"""
Forwarding Engine
=================

Sends one buffered inbound request to the fixed upstream gateway over mutual
TLS and returns the buffered upstream response untouched.

Each call makes exactly one outbound attempt. There is no retry and no
caching; the caller owns retry policy.
"""

import asyncio
import logging
from typing import Optional

import httpx
from pydantic import BaseModel

from ..config import (
    DEFAULT_REQUEST_CONTENT_TYPE,
    DEFAULT_UPSTREAM_PATH,
    UPSTREAM_HOST,
    UPSTREAM_PORT,
    Settings,
)
from ..identity import ClientIdentity, CredentialError, CredentialErrorKind, build_client_ssl_context
from .errors import UpstreamFailure, classify_transport_error, from_credential_error

logger = logging.getLogger(__name__)

RESPONSE_PREVIEW_CHARS = 300


class InboundRequest(BaseModel):
    """
    The parts of a caller's request that are forwarded upstream.

    Attributes:
        body: Fully buffered request body
        upstream_path: Value of the ``path`` query override, if given
        soap_action: Inbound SOAPAction header, if given
        content_type: Inbound Content-Type header, if given
    """

    body: bytes = b""
    upstream_path: Optional[str] = None
    soap_action: Optional[str] = None
    content_type: Optional[str] = None


class UpstreamResponse(BaseModel):
    status_code: int
    content: bytes
    content_type: Optional[str] = None


def resolve_upstream_path(override: Optional[str]) -> str:
    if not override:
        return DEFAULT_UPSTREAM_PATH
    if not override.startswith("/"):
        return "/" + override
    return override


def build_upstream_headers(inbound: InboundRequest) -> dict:
    """Build the outbound header subset for a forwarded request."""
    return {
        "Content-Type": inbound.content_type or DEFAULT_REQUEST_CONTENT_TYPE,
        "Content-Length": str(len(inbound.body)),
        "SOAPAction": inbound.soap_action or "",
        # The body is relayed byte-for-byte, so it must not come back compressed
        "Accept-Encoding": "identity",
    }


class ForwardingEngine:
    """
    Owns the outbound mTLS client shared by all forward operations.

    The client is created on first use, once the credential has opened
    successfully. A credential that fails to open is reported per request
    and retried on the next one.

    Args:
        settings: Application settings
        identity: Client identity loaded at startup
        transport: Optional httpx transport (tests inject a MockTransport)
    """

    def __init__(
        self,
        settings: Settings,
        identity: ClientIdentity,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.identity = identity
        self.timeout_seconds = settings.UPSTREAM_TIMEOUT_SECONDS
        self.timeout = httpx.Timeout(settings.UPSTREAM_TIMEOUT_SECONDS)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        return f"https://{UPSTREAM_HOST}:{UPSTREAM_PORT}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client

        async with self._client_lock:
            if self._client is None:
                credential = self.identity.credential
                if credential is None:
                    raise CredentialError(
                        CredentialErrorKind.INVALID_CERTIFICATE,
                        "Missing certificate or password",
                    )
                # PKCS#12 decoding and key loading block; keep them off the loop
                ssl_context = await asyncio.to_thread(build_client_ssl_context, credential)
                self._client = httpx.AsyncClient(
                    verify=ssl_context,
                    transport=self._transport,
                    timeout=self.timeout,
                )
                logger.info("Created outbound mTLS client", extra={"target": self.base_url})

        return self._client

    async def _exchange(self, client: httpx.AsyncClient, request: httpx.Request):
        response = await client.send(request, stream=True)
        try:
            # Raw bytes: whatever Content-Encoding the upstream applied stays applied
            content = b"".join([chunk async for chunk in response.aiter_raw()])
        finally:
            await response.aclose()
        return response, content

    async def forward(self, inbound: InboundRequest) -> UpstreamResponse:
        """
        Forward one request upstream.

        The send and the body read share a single deadline of
        ``UPSTREAM_TIMEOUT_SECONDS``, so a slowly trickling upstream is cut
        off too.

        Args:
            inbound: Buffered inbound request

        Returns:
            UpstreamResponse with status, body and content type

        Raises:
            UpstreamFailure: If the credential cannot be used or the
                upstream cannot be reached
        """
        path = resolve_upstream_path(inbound.upstream_path)
        headers = build_upstream_headers(inbound)

        logger.info("=== New Request ===")
        logger.info(f"Target: {UPSTREAM_HOST}:{UPSTREAM_PORT}{path}")
        logger.info(f"SOAPAction: {inbound.soap_action or '(none)'}")
        logger.info(f"Body size: {len(inbound.body)} bytes")
        logger.info(f"Content-Type: {inbound.content_type}")

        try:
            client = await self._get_client()
        except CredentialError as e:
            failure = from_credential_error(e)
            logger.error(f"Certificate error: {e}", extra={"code": failure.code})
            raise failure from e

        # Authority is fixed; the override only ever supplies path and query
        request = client.build_request(
            "POST", f"{self.base_url}{path}", content=inbound.body, headers=headers
        )

        try:
            async with asyncio.timeout(self.timeout_seconds):
                response, content = await self._exchange(client, request)
        except (httpx.TransportError, TimeoutError) as e:
            failure = classify_transport_error(e)
            logger.error(f"HTTPS request error: {e!r}")
            logger.error(f"Error code: {failure.code}")
            raise failure from e

        logger.info(f"Upstream response status: {response.status_code}")
        logger.info(f"Response size: {len(content)} bytes")
        logger.debug(
            "Response preview: %s",
            content[:RESPONSE_PREVIEW_CHARS].decode("utf-8", errors="replace"),
        )

        return UpstreamResponse(
            status_code=response.status_code,
            content=content,
            content_type=response.headers.get("content-type"),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
