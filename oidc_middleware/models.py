"""
Data Models Module

This module defines Pydantic models for response validation and data
serialization throughout the middleware service.

Models are organized by functional area:
- Authentication models (session status, user profile)
- Health check models
- Error models
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Authentication Models
# ============================================================================

class SessionStatus(BaseModel):
    """Authentication state of the current request."""
    authenticated: bool = Field(..., description="Whether the request carries a valid session")
    user: Optional[Dict[str, Any]] = Field(None, description="Session claims when authenticated")


class UserProfile(BaseModel):
    """User profile built from the session's identity claims."""
    sub: str = Field(..., description="Subject identifier at the identity provider")
    name: Optional[str] = Field(None, description="User display name")
    email: Optional[str] = Field(None, description="User email address, unless filtered")
    claims: Dict[str, Any] = Field(default_factory=dict, description="All stored session claims")

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "UserProfile":
        return cls(
            sub=str(claims.get("sub", "")),
            name=claims.get("name") or claims.get("preferred_username"),
            email=claims.get("email"),
            claims=claims,
        )


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    issuer: Optional[str] = Field(None, description="Discovered OpenID issuer")
    timestamp: datetime = Field(default_factory=_utcnow, description="Check timestamp")


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(default_factory=_utcnow, description="Error timestamp")
