"""
Data Models Module

Pydantic models for the JSON bodies the relay produces. Upstream responses
are relayed as raw bytes and have no model.

Models are organized by functional area:
- Diagnostics models (health and debug snapshots)
- Error models (gate rejections and forwarding failures)
"""

from typing import Optional

from pydantic import BaseModel, Field


# ============================================================================
# Diagnostics Models
# ============================================================================

class HealthResponse(BaseModel):
    """Liveness/readiness snapshot; ``degraded`` while a load error is active."""
    status: str = Field(..., description="'ok' or 'degraded'")
    timestamp: str = Field(..., description="ISO-8601 UTC time of the snapshot")
    hasCertificate: bool
    hasPassword: bool
    certSize: int = Field(..., description="Decoded certificate bundle size in bytes")
    error: Optional[str] = Field(None, description="Certificate load error, if any")


class DebugResponse(BaseModel):
    """Extended snapshot including upstream target and runtime version."""
    status: str = "ok"
    timestamp: str
    hasCertificate: bool
    hasPassword: bool
    hasApiKey: bool
    certSize: int
    skatHost: str
    skatPort: int
    pythonVersion: str
    error: Optional[str] = None


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Error body returned by the gate and the forwarding route."""
    error: str
    details: Optional[str] = None
    code: Optional[str] = None
    method: Optional[str] = None
    url: Optional[str] = None
