"""
Proxy Routes - Upstream Request Forwarding
==========================================

The request gate has already checked method, API key and certificate state
by the time these handlers run.

Endpoints:
----------
- POST /proxy[?path=<upstream-path>]: Forward the body to the SKAT gateway
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response

from ..config import (
    DEFAULT_RESPONSE_CONTENT_TYPE,
    PROXY_ROUTE_PREFIX,
    SOAP_ACTION_HEADER,
    UPSTREAM_NAME,
)
from .engine import ForwardingEngine, InboundRequest, UpstreamResponse
from .errors import UpstreamFailure

logger = logging.getLogger(__name__)

proxy_router = APIRouter()

DISCONNECT_POLL_SECONDS = 0.5

# nginx convention for "client closed request"
STATUS_CLIENT_CLOSED_REQUEST = 499


class CallerDisconnected(Exception):
    """The inbound connection went away before the upstream answered."""


# ============================================================================
# Dependencies
# ============================================================================

def get_forwarding_engine(request: Request) -> ForwardingEngine:
    """
    Dependency to get the forwarding engine from app state.

    Raises:
        HTTPException: If the app was built without an engine
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Forwarding engine not initialized",
        )
    return engine


# ============================================================================
# Helpers
# ============================================================================

async def _watch_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def forward_unless_disconnected(
    request: Request,
    engine: ForwardingEngine,
    inbound: InboundRequest,
) -> UpstreamResponse:
    """
    Run the forward while watching for the caller going away.

    Raises:
        CallerDisconnected: If the caller disconnected first
    """
    forward_task = asyncio.ensure_future(engine.forward(inbound))
    watcher = asyncio.ensure_future(_watch_disconnect(request))
    try:
        await asyncio.wait({forward_task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        forward_task.cancel()
        raise
    finally:
        watcher.cancel()

    if not forward_task.done():
        logger.warning("Caller disconnected, aborting outbound request")
        forward_task.cancel()
        raise CallerDisconnected()

    return forward_task.result()


# ============================================================================
# Proxy Endpoints
# ============================================================================

@proxy_router.post(PROXY_ROUTE_PREFIX + "{suffix:path}")
async def proxy_request(
    request: Request,
    engine: ForwardingEngine = Depends(get_forwarding_engine),
):
    """
    Forward the caller's SOAP request to the upstream gateway over mTLS.

    The upstream status and body are returned verbatim. Only Content-Type
    (upstream's, else text/xml) and the CORS headers are set on the reply.

    Headers:
        SOAPAction: Passed through (empty if absent)
        Content-Type: Passed through (text/xml; charset=utf-8 if absent)
        X-API-Key: Checked by the request gate when an API key is configured
    """
    try:
        inbound = InboundRequest(
            body=await request.body(),
            upstream_path=request.query_params.get("path"),
            soap_action=request.headers.get(SOAP_ACTION_HEADER),
            content_type=request.headers.get("content-type"),
        )

        upstream = await forward_unless_disconnected(request, engine, inbound)

    except UpstreamFailure as e:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={
                "error": f"Failed to connect to {UPSTREAM_NAME}",
                "details": e.details,
                "code": e.code,
            },
        )

    except CallerDisconnected:
        return Response(status_code=STATUS_CLIENT_CLOSED_REQUEST)

    except Exception as e:
        logger.error(f"Request processing error: {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal proxy error",
                "details": str(e) or type(e).__name__,
            },
        )

    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers={"Content-Type": upstream.content_type or DEFAULT_RESPONSE_CONTENT_TYPE},
    )
