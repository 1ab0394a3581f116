"""
mTLS Relay
==========

Forwarding relay that terminates plain HTTP from trusted callers (edge or
serverless functions that cannot hold a client certificate) and re-sends the
request to the SKAT eIndkomst gateway over mutual TLS, presenting an OCES3
client certificate on the caller's behalf.

Architecture:
    Edge Function → Relay (this service) → SKAT gateway (mTLS, TLS 1.2+)

Packages:
    - identity    : client certificate loading and TLS context construction
    - gate        : inbound request checks (preflight, API key, routing, credential)
    - proxy       : forwarding engine and failure classification
    - diagnostics : /health and /debug snapshots
"""

__version__ = "1.0.0"
