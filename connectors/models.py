"""
Domain models for connector credentials, pending authorizations and
derived connection status.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RefreshError(str, Enum):
    GRANT_REVOKED = "grant_revoked"
    REFRESH_NOT_SUPPORTED = "refresh_not_supported"
    TRANSIENT_FAILURE = "transient_failure"


# Errors that only a new authorization flow can clear.
RECONNECT_ERRORS = frozenset({RefreshError.GRANT_REVOKED, RefreshError.REFRESH_NOT_SUPPORTED})


class TokenResponse(BaseModel):
    """Successful payload from a provider's token endpoint."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None


class Credential(BaseModel):
    """Tokens issued to one user for one provider."""

    user_id: str
    provider_id: str
    access_token: str = Field(..., repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    access_token_expires_at: Optional[datetime] = None
    token_type: str = "Bearer"
    granted_scope: str = ""
    last_refresh_error: Optional[RefreshError] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_refreshed_at: Optional[datetime] = None

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        if self.access_token_expires_at is None:
            return False
        return as_utc(self.access_token_expires_at) <= now + margin

    def has_usable_refresh_token(self) -> bool:
        return bool(self.refresh_token) and self.last_refresh_error != RefreshError.GRANT_REVOKED

    def apply_tokens(self, tokens: TokenResponse, now: datetime) -> None:
        """Overwrite with a fresh token response, keeping the old refresh token if none came back."""
        self.access_token = tokens.access_token
        if tokens.refresh_token:
            self.refresh_token = tokens.refresh_token
        self.access_token_expires_at = (
            now + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
        )
        if tokens.scope:
            self.granted_scope = tokens.scope
        if tokens.token_type:
            self.token_type = tokens.token_type
        self.last_refresh_error = None
        self.updated_at = now


class AuthorizationState(BaseModel):
    """A pending authorization attempt, keyed by its random ``state``."""

    state: str
    user_id: str
    provider_id: str
    return_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, ttl: timedelta, now: datetime) -> bool:
        return as_utc(self.created_at) + ttl < now


class ConnectorStatus(BaseModel):
    """Connection health of one provider for one user (never persisted)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider: str
    provider_display_name: str
    is_connected: bool
    services: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    requires_reconnection: bool = False
