"""
Proxy Package
=============

Forwards gate-approved requests to the SKAT gateway over mutual TLS.

Main Components:
----------------
- engine.py: ForwardingEngine (outbound mTLS client, one attempt per request)
- errors.py: Failure taxonomy and transport error classification
- routes.py: FastAPI router with the POST /proxy endpoint

Usage:
------
    from mtls_relay.proxy import proxy_router
    app.include_router(proxy_router)
"""

from .engine import ForwardingEngine, InboundRequest, UpstreamResponse
from .errors import FailureKind, UpstreamFailure, classify_transport_error
from .routes import proxy_router

__all__ = [
    "FailureKind",
    "ForwardingEngine",
    "InboundRequest",
    "UpstreamFailure",
    "UpstreamResponse",
    "classify_transport_error",
    "proxy_router",
]
