"""
Data Models Module

This module defines Pydantic models for request/response validation
and data serialization throughout the broker.

Models are organized by functional area:
- Identity models (the structured claim set, the external user profile)
- Authentication models (initialize, exchange, refresh requests and responses)
- Polling models (cross-origin delivery start and status)
- Health models

External casing is a serialization concern only: the credential pair,
user profile and polling payloads are written in camelCase through
aliases, everything else keeps snake_case.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for payloads exchanged with clients in camelCase"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Identity Models
# ============================================================================

class Claims(BaseModel):
    """
    Resolved identity claims.

    Well-known fields are typed; any other provider claim is kept as an
    extra field so nothing the provider asserted is lost.
    """

    model_config = ConfigDict(extra="allow")

    sub: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    email: Optional[str] = None
    oib: Optional[str] = Field(None, description="National identification number")
    birthdate: Optional[str] = None

    @field_validator("sub", "given_name", "family_name", "email", "oib", "birthdate", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @property
    def national_id(self) -> Optional[str]:
        """Some providers publish the national id as ``pin`` instead of ``oib``"""
        return self.oib or (self.model_extra or {}).get("pin")

    def merged_with(self, other: "Claims") -> "Claims":
        """Return a new claim set where ``other`` wins on every conflicting key"""
        return Claims.model_validate({**self.to_payload(), **other.to_payload()})

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class UserProfile(CamelModel):
    """User summary returned to the client after a successful exchange"""
    sub: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    oib: Optional[str] = None
    email: Optional[str] = None
    date_of_birth: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: Claims) -> "UserProfile":
        return cls(
            sub=claims.sub,
            first_name=claims.given_name,
            last_name=claims.family_name,
            oib=claims.national_id,
            email=claims.email,
            date_of_birth=claims.birthdate,
        )


# ============================================================================
# Authentication Models
# ============================================================================

class InitializeResponse(BaseModel):
    """Response of GET /auth/initialize"""
    authorization_url: str = Field(..., description="URL the browser must open")
    session_id: str = Field(..., description="Opaque id to present at /auth/exchange")
    state: str = Field(..., description="State round-tripped through the provider")


class ExchangeRequest(BaseModel):
    """Request body of POST /auth/exchange"""
    code: str = Field(..., min_length=1, description="Authorization code from the callback")
    state: str = Field(..., min_length=1, description="State from the callback")
    session_id: str = Field(..., min_length=1, description="Session id from /auth/initialize")


class RefreshRequest(BaseModel):
    """Request body of POST /auth/refresh"""
    refresh_token: str = Field(..., min_length=1)


class TokenPairResponse(CamelModel):
    """Self-issued credential pair"""
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_in: int


class ExchangeResponse(TokenPairResponse):
    user: UserProfile


class MessageResponse(BaseModel):
    message: str


# ============================================================================
# Polling Models
# ============================================================================

class PollingStartRequest(BaseModel):
    """Request body of POST /auth/polling/start"""
    state: str = Field(..., min_length=1)
    session_id: Optional[str] = Field(None, description="Session id from /auth/initialize")


class PollingStartResponse(CamelModel):
    polling_id: str
    expires_at: datetime


class PollingResult(CamelModel):
    code: Optional[str] = None
    state: Optional[str] = None


class PollingStatusResponse(CamelModel):
    """
    Status of a polling session.

    ``result`` is only present once completed, ``error`` and
    ``error_description`` only once failed.
    """
    status: str
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    result: Optional[PollingResult] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


# ============================================================================
# User Models
# ============================================================================

class ExtendedUserInfoResponse(BaseModel):
    user_info: Dict[str, Any]
    source: str = Field(..., description="userinfo_endpoint, jwt_claims or jwt_claims_fallback")
    available_fields: List[str]
    token_expiry: Optional[datetime] = None


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    timestamp: datetime
    uptime: float = Field(..., description="Seconds since startup")
    environment: str
    sessions: Dict[str, Dict[str, int]]

