"""
Connector API routes — connect / callback, status, refresh, disconnect.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.dependencies import get_current_user_id
from connectors.errors import (
    ConnectorError,
    InvalidOrExpiredState,
    NotConnected,
    ProviderNotFound,
    RefreshTemporarilyUnavailable,
    RequiresReconnection,
    TokenExchangeFailed,
)
from connectors.models import ConnectorStatus, utcnow
from connectors.service import ConnectorService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connectors", tags=["connectors"])

_RETRY_AFTER_SECONDS = "30"

_HTTP_STATUS: Dict[type, int] = {
    ProviderNotFound: status.HTTP_404_NOT_FOUND,
    NotConnected: status.HTTP_404_NOT_FOUND,
    RequiresReconnection: status.HTTP_409_CONFLICT,
    RefreshTemporarilyUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    InvalidOrExpiredState: status.HTTP_400_BAD_REQUEST,
    TokenExchangeFailed: status.HTTP_400_BAD_REQUEST,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProviderInfo(_CamelModel):
    provider: str
    display_name: str
    scope: str
    services: List[str] = Field(default_factory=list)


class ConnectResponse(_CamelModel):
    redirect_url: str


class MessageResponse(_CamelModel):
    message: str


class AccessTokenResponse(_CamelModel):
    provider: str
    access_token: str
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None
    retrieved_at: datetime


# ── Dependencies / helpers ─────────────────────────────────────────────


def get_connector_service(request: Request) -> ConnectorService:
    return request.app.state.connector_service


def _frontend_base(request: Request) -> str:
    return request.app.state.settings.frontend_base_url.rstrip("/")


def _http_error(exc: ConnectorError) -> HTTPException:
    code = _HTTP_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    headers = {"Retry-After": _RETRY_AFTER_SECONDS} if isinstance(exc, RefreshTemporarilyUnavailable) else None
    return HTTPException(
        status_code=code,
        detail={"error": exc.kind, "message": str(exc)},
        headers=headers,
    )


def _safe_return_url(return_url: Optional[str], frontend_base: str) -> Optional[str]:
    """Only same-site paths or URLs under the frontend are accepted as return targets."""
    if not return_url:
        return None
    if return_url.startswith("/") and not return_url.startswith("//"):
        return return_url
    if return_url.startswith(frontend_base + "/") or return_url == frontend_base:
        return return_url
    logger.warning("Ignoring off-site return_url %r", return_url)
    return None


def _absolute_return_url(return_url: str, frontend_base: str) -> str:
    return frontend_base + return_url if return_url.startswith("/") else return_url


def _result_redirect(frontend_base: str, provider: str, **params: str) -> RedirectResponse:
    query = urlencode({**params, "provider": provider})
    return RedirectResponse(f"{frontend_base}/connectors?{query}", status_code=status.HTTP_302_FOUND)


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers", response_model=List[ProviderInfo])
async def list_providers(
    service: ConnectorService = Depends(get_connector_service),
) -> List[ProviderInfo]:
    """
    List configured connector providers.
    No auth required — used by the frontend to show available connectors.
    """
    return [
        ProviderInfo(
            provider=p.provider_id,
            display_name=p.display_name,
            scope=p.scope,
            services=list(p.services),
        )
        for p in service.list_providers()
    ]


@router.get("/status", response_model=List[ConnectorStatus])
async def connector_status(
    user_id: str = Depends(get_current_user_id),
    service: ConnectorService = Depends(get_connector_service),
) -> List[ConnectorStatus]:
    """Connection status of every provider for the authenticated user."""
    return await service.get_status(user_id)


@router.get("/{provider}/connect")
async def connect_redirect(
    provider: str,
    request: Request,
    return_url: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: ConnectorService = Depends(get_connector_service),
) -> RedirectResponse:
    """Start the OAuth flow by redirecting the browser to the provider."""
    try:
        auth_url = await service.begin_authorization(
            user_id, provider, _safe_return_url(return_url, _frontend_base(request))
        )
    except ConnectorError as exc:
        raise _http_error(exc)
    return RedirectResponse(auth_url, status_code=status.HTTP_302_FOUND)


@router.post("/{provider}/connect", response_model=ConnectResponse)
async def connect_url(
    provider: str,
    request: Request,
    return_url: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: ConnectorService = Depends(get_connector_service),
) -> ConnectResponse:
    """
    Get the OAuth authorization URL for a provider.

    For single-page frontends that open the URL in a popup themselves.
    """
    try:
        auth_url = await service.begin_authorization(
            user_id, provider, _safe_return_url(return_url, _frontend_base(request))
        )
    except ConnectorError as exc:
        raise _http_error(exc)
    return ConnectResponse(redirect_url=auth_url)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    service: ConnectorService = Depends(get_connector_service),
) -> RedirectResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Exchanges the code for tokens and sends the browser back to the
    frontend with the outcome in the query string.
    """
    frontend = _frontend_base(request)

    if error:
        logger.warning("OAuth error for provider %s: %s - %s", provider, error, error_description)
        if state:
            await service.discard_state(state)
        return _result_redirect(frontend, provider, error=error)

    if not code or not state:
        logger.warning("Missing required parameters in OAuth callback for provider %s", provider)
        return _result_redirect(frontend, provider, error="missing_parameters")

    try:
        credential, return_url = await service.complete_with_return_url(provider, code, state)
    except ConnectorError as exc:
        logger.warning("OAuth callback for %s failed: %s", provider, exc.kind)
        return _result_redirect(frontend, provider, error=exc.kind)

    if return_url:
        return RedirectResponse(_absolute_return_url(return_url, frontend), status_code=status.HTTP_302_FOUND)
    return _result_redirect(frontend, credential.provider_id, success="true")


@router.post("/{provider}/refresh", response_model=MessageResponse)
async def refresh_tokens(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    service: ConnectorService = Depends(get_connector_service),
) -> MessageResponse:
    """Make sure the stored token is fresh, refreshing it if it is about to expire."""
    try:
        await service.ensure_fresh(user_id, provider)
    except ConnectorError as exc:
        raise _http_error(exc)
    return MessageResponse(message=f"Tokens refreshed successfully for {provider}")


@router.get("/{provider}/token", response_model=AccessTokenResponse)
async def access_token(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    service: ConnectorService = Depends(get_connector_service),
) -> AccessTokenResponse:
    """Return a fresh access token for in-app integrations that call the provider directly."""
    try:
        credential = await service.ensure_fresh(user_id, provider)
    except ConnectorError as exc:
        raise _http_error(exc)
    return AccessTokenResponse(
        provider=credential.provider_id,
        access_token=credential.access_token,
        token_type=credential.token_type,
        expires_at=credential.access_token_expires_at,
        retrieved_at=utcnow(),
    )


@router.delete("/{provider}", response_model=MessageResponse)
async def disconnect_provider(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    service: ConnectorService = Depends(get_connector_service),
) -> MessageResponse:
    """Revoke and delete the connection to a provider."""
    try:
        await service.disconnect(user_id, provider)
    except ConnectorError as exc:
        raise _http_error(exc)
    return MessageResponse(message=f"Successfully disconnected from {provider}")
