"""
Request Gate
============

Checks every inbound request before any forwarding work starts, in this order:

1. OPTIONS preflight → 200 with CORS headers, nothing else consulted
2. GET /health and GET /debug → passed through, no API key needed
3. API key configured and X-API-Key differs → 401 (applies to unknown routes too)
4. Not POST, or path outside /proxy → 405
5. Certificate or passphrase missing → 500

The middleware wraps the whole FastAPI app, so it also injects the CORS
headers on every response and is the last per-request boundary for
exceptions: nothing raised while handling one request escapes it.
"""

import enum
import hmac
import logging
from typing import Optional

from pydantic import BaseModel
from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config import API_KEY_HEADER, PROXY_ROUTE_PREFIX, SOAP_ACTION_HEADER, Settings
from .diagnostics import DIAGNOSTICS_PATHS
from .identity import ClientIdentity
from .models import ErrorResponse

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
    "Access-Control-Allow-Headers": f"Content-Type, Authorization, {API_KEY_HEADER}, {SOAP_ACTION_HEADER}",
}

PREFLIGHT_METHOD = "OPTIONS"
DIAGNOSTICS_METHOD = "GET"
FORWARD_METHOD = "POST"


class GateAction(str, enum.Enum):
    PREFLIGHT = "preflight"
    PASS = "pass"
    REJECT = "reject"


class GateDecision(BaseModel):
    action: GateAction
    status_code: int = 200
    body: Optional[ErrorResponse] = None


class RequestGate:
    """
    Decides what happens to an inbound request before routing.

    Args:
        settings: Application settings (API key)
        identity: Client identity loaded at startup
    """

    def __init__(self, settings: Settings, identity: ClientIdentity):
        self.api_key = settings.PROXY_API_KEY
        self.identity = identity

    def api_key_matches(self, supplied: Optional[str]) -> bool:
        if not self.api_key:
            return True
        if supplied is None:
            return False
        # Starlette decodes header bytes as latin-1; re-encode to compare raw bytes
        return hmac.compare_digest(supplied.encode("latin-1"), self.api_key.encode("utf-8"))

    def evaluate(self, method: str, path: str, url: str, api_key: Optional[str]) -> GateDecision:
        """
        Evaluate one request.

        Args:
            method: HTTP method
            path: Request path without query string
            url: Path plus query string as received (echoed in 405 bodies)
            api_key: X-API-Key header value, if present
        """
        if method == PREFLIGHT_METHOD:
            return GateDecision(action=GateAction.PREFLIGHT)

        if method == DIAGNOSTICS_METHOD and path in DIAGNOSTICS_PATHS:
            return GateDecision(action=GateAction.PASS)

        if not self.api_key_matches(api_key):
            logger.info("Invalid API key")
            return GateDecision(
                action=GateAction.REJECT,
                status_code=401,
                body=ErrorResponse(error="Unauthorized - Invalid API key"),
            )

        if method != FORWARD_METHOD or not path.startswith(PROXY_ROUTE_PREFIX):
            logger.info(f"Method not allowed: {method} {url}")
            return GateDecision(
                action=GateAction.REJECT,
                status_code=405,
                body=ErrorResponse(error="Method not allowed", method=method, url=url),
            )

        if self.identity.credential is None:
            logger.info("Certificate not configured")
            return GateDecision(
                action=GateAction.REJECT,
                status_code=500,
                body=ErrorResponse(
                    error="Certificate not configured",
                    details=self.identity.load_error or "Missing certificate or password",
                ),
            )

        return GateDecision(action=GateAction.PASS)


def _request_url(scope: Scope) -> str:
    url = scope.get("path", "")
    query_string = scope.get("query_string", b"")
    if query_string:
        url += "?" + query_string.decode("latin-1")
    return url


class RequestGateMiddleware:
    """
    Pure ASGI middleware applying the RequestGate and CORS headers.

    Kept at the ASGI level (not BaseHTTPMiddleware) so the request stream and
    disconnect signal reach the proxy route untouched.
    """

    def __init__(self, app: ASGIApp, gate: RequestGate):
        self.app = app
        self.gate = gate

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_with_cors(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
                headers = MutableHeaders(scope=message)
                for name, value in CORS_HEADERS.items():
                    headers[name] = value
            await send(message)

        try:
            headers = Headers(scope=scope)
            decision = self.gate.evaluate(
                method=scope["method"],
                path=scope["path"],
                url=_request_url(scope),
                api_key=headers.get(API_KEY_HEADER),
            )

            if decision.action == GateAction.PREFLIGHT:
                response = Response(status_code=200)
                await response(scope, receive, send_with_cors)
                return

            if decision.action == GateAction.REJECT:
                response = JSONResponse(
                    status_code=decision.status_code,
                    content=decision.body.model_dump(exclude_none=True),
                )
                await response(scope, receive, send_with_cors)
                return

            await self.app(scope, receive, send_with_cors)

        except Exception as e:
            logger.error(
                f"Unhandled error: {e}",
                exc_info=True,
                extra={"path": scope.get("path"), "method": scope.get("method")},
            )
            if response_started:
                # Headers already sent
                return
            response = JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "details": "An unexpected error occurred"},
            )
            await response(scope, receive, send_with_cors)
