"""
Unit Tests for the Request Gate
===============================

Tests for mtls_relay/gate.py

Test Coverage:
--------------
1. Check ordering (preflight, diagnostics, API key, routing, certificate)
2. API key enforcement on every non-diagnostics route
3. CORS headers on every response
4. No outbound attempt for rejected requests
"""

import pytest
from fastapi import status

from mtls_relay.gate import CORS_HEADERS, GateAction, RequestGate
from mtls_relay.identity import load_identity

from .conftest import TEST_API_KEY


def _assert_cors(response):
    for name, value in CORS_HEADERS.items():
        assert response.headers[name] == value


# ============================================================================
# Decision Logic
# ============================================================================

@pytest.fixture
def gate(mock_settings):
    return RequestGate(mock_settings, load_identity(mock_settings))


def test_preflight_short_circuits_everything(make_settings):
    settings = make_settings(OCES3_CERTIFICATE_BASE64=None)
    gate = RequestGate(settings, load_identity(settings))

    decision = gate.evaluate("OPTIONS", "/anything", "/anything", api_key=None)

    assert decision.action == GateAction.PREFLIGHT


def test_diagnostics_bypass_api_key(gate):
    assert gate.evaluate("GET", "/health", "/health", api_key=None).action == GateAction.PASS
    assert gate.evaluate("GET", "/debug", "/debug", api_key="wrong").action == GateAction.PASS


def test_api_key_checked_before_routing(gate):
    decision = gate.evaluate("GET", "/unknown", "/unknown", api_key="wrong")

    assert decision.action == GateAction.REJECT
    assert decision.status_code == 401


def test_api_key_is_case_sensitive(gate):
    decision = gate.evaluate("POST", "/proxy", "/proxy", api_key=TEST_API_KEY.upper())

    assert decision.status_code == 401


def test_routing_rejection_echoes_method_and_url(gate):
    decision = gate.evaluate("PUT", "/proxy", "/proxy?path=/x", api_key=TEST_API_KEY)

    assert decision.status_code == 405
    assert decision.body.method == "PUT"
    assert decision.body.url == "/proxy?path=/x"


def test_no_api_key_configured_allows_any_caller(make_settings):
    settings = make_settings(PROXY_API_KEY=None)
    gate = RequestGate(settings, load_identity(settings))

    assert gate.evaluate("POST", "/proxy", "/proxy", api_key=None).action == GateAction.PASS


def test_missing_credential_rejected_after_routing(make_settings):
    settings = make_settings(OCES3_CERTIFICATE_PASSWORD=None)
    gate = RequestGate(settings, load_identity(settings))

    decision = gate.evaluate("POST", "/proxy", "/proxy", api_key=TEST_API_KEY)

    assert decision.status_code == 500
    assert decision.body.error == "Certificate not configured"
    assert decision.body.details == "OCES3_CERTIFICATE_PASSWORD not set"


# ============================================================================
# HTTP Behaviour
# ============================================================================

def test_options_returns_empty_200_with_cors(make_client, make_settings, upstream):
    client = make_client(make_settings(OCES3_CERTIFICATE_BASE64=None))

    response = client.options("/proxy")

    assert response.status_code == status.HTTP_200_OK
    assert response.content == b""
    _assert_cors(response)
    assert upstream.requests == []


def test_wrong_api_key_returns_401_and_never_calls_upstream(client, auth_headers, upstream):
    headers = {**auth_headers, "X-API-Key": "wrong"}

    response = client.post("/proxy", headers=headers, content=b"<xml/>")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json() == {"error": "Unauthorized - Invalid API key"}
    _assert_cors(response)
    assert upstream.requests == []


def test_missing_api_key_returns_401(client, upstream):
    response = client.post("/proxy", content=b"<xml/>")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert upstream.requests == []


def test_unknown_route_without_key_returns_401(client):
    response = client.get("/admin")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_get_proxy_returns_405(client, auth_headers):
    response = client.get("/proxy?path=/x", headers=auth_headers)

    assert response.status_code == status.HTTP_405_METHOD_NOT_ALLOWED
    assert response.json() == {"error": "Method not allowed", "method": "GET", "url": "/proxy?path=/x"}
    _assert_cors(response)


def test_post_outside_proxy_returns_405(client, auth_headers):
    response = client.post("/other", headers=auth_headers, content=b"<xml/>")

    assert response.status_code == status.HTTP_405_METHOD_NOT_ALLOWED


def test_proxy_without_certificate_returns_500(make_client, make_settings, auth_headers, upstream):
    client = make_client(make_settings(OCES3_CERTIFICATE_BASE64=None))

    response = client.post("/proxy", headers=auth_headers, content=b"<xml/>")

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json() == {
        "error": "Certificate not configured",
        "details": "OCES3_CERTIFICATE_BASE64 not set",
    }
    assert upstream.requests == []


def test_unexpected_error_is_contained(client, auth_headers, upstream, monkeypatch):
    """An exception escaping a route becomes a 500, not a crash."""
    def explode(identity):
        raise RuntimeError("boom")

    monkeypatch.setattr("mtls_relay.diagnostics.health_snapshot", explode)

    response = client.get("/health")

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json() == {"error": "Internal server error", "details": "An unexpected error occurred"}
    _assert_cors(response)
