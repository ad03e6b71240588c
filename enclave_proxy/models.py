"""
Data Models Module

Pydantic models for the JSON bodies the proxy produces itself. Proxied
request and response bodies are opaque bytes and have no models.
"""

from typing import Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Liveness report returned by /health."""
    status: str = Field(default="ok", description="Service status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")


class ErrorResponse(BaseModel):
    """Body of every error the proxy generates."""
    error: str = Field(..., description="Machine-readable error code")
    detail: Optional[str] = Field(None, description="Human-readable error message")
