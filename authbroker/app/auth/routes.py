"""
Authentication routes for the broker's OAuth 2.0 / OIDC flow.

Endpoints:
    GET  /auth/initialize              authorization URL + session id
    GET  /auth/callback                provider redirect target (HTML page)
    POST /auth/exchange                code -> self-issued credential pair
    POST /auth/refresh                 refresh credential -> new pair
    POST /auth/polling/start           start cross-origin polling session
    GET  /auth/polling/{id}/status     poll for the callback result
    GET  /auth/me                      identity of the bearer
    POST /auth/logout                  revoke embedded provider tokens
"""

from typing import Any, Dict, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import HTMLResponse, JSONResponse

from ..errors import ValidationError
from ..models import (
    ExchangeRequest,
    ExchangeResponse,
    InitializeResponse,
    MessageResponse,
    PollingStartRequest,
    PollingStartResponse,
    PollingStatusResponse,
    RefreshRequest,
    TokenPairResponse,
)
from .dependencies import get_auth_service, get_current_user
from .polling import NOT_FOUND
from .service import AuthService, identity_from_credential
from .templates import render_callback_page


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


def _validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if not parsed.scheme or not (parsed.netloc or parsed.path):
        raise ValidationError(
            "Validation failed",
            details=[{"field": "redirect_uri", "message": "must be a valid URI"}],
        )
    return redirect_uri


# =============================================================================
# Authorization Flow
# =============================================================================

@auth_router.get("/initialize", response_model=InitializeResponse)
async def initialize(
    redirect_uri: str = Query(..., description="Redirect URI registered at the provider"),
    state: Optional[str] = Query(None, description="Optional client-chosen state"),
    service: AuthService = Depends(get_auth_service),
):
    """
    Initialize the OAuth flow.

    The client opens ``authorization_url`` in a browser and keeps
    ``session_id`` for the exchange step.
    """
    return await service.initialize(_validate_redirect_uri(redirect_uri), client_state=state)


@auth_router.get("/callback", response_class=HTMLResponse)
async def callback(
    code: Optional[str] = Query(None, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
    service: AuthService = Depends(get_auth_service),
):
    """
    Handle the provider redirect.

    Renders the callback page; a polling session waiting on ``state`` is
    resolved at the same time.
    """
    artifact = await service.handle_callback(
        code=code,
        state=state,
        error=error,
        error_description=error_description,
    )
    return HTMLResponse(content=render_callback_page(artifact), status_code=200)


@auth_router.post("/exchange", response_model=ExchangeResponse)
async def exchange(
    body: ExchangeRequest,
    service: AuthService = Depends(get_auth_service),
):
    """Exchange the authorization code for the broker's credential pair."""
    return await service.exchange(code=body.code, state=body.state, session_id=body.session_id)


@auth_router.post("/refresh", response_model=TokenPairResponse)
async def refresh(
    body: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
):
    return service.refresh(body.refresh_token)


# =============================================================================
# Cross-origin Polling
# =============================================================================

@auth_router.post("/polling/start", response_model=PollingStartResponse)
async def start_polling(
    body: PollingStartRequest,
    service: AuthService = Depends(get_auth_service),
):
    return await service.start_polling(state=body.state, session_id=body.session_id)


@auth_router.get(
    "/polling/{polling_id}/status",
    response_model=PollingStatusResponse,
    response_model_exclude_none=True,
)
async def polling_status(
    polling_id: str,
    service: AuthService = Depends(get_auth_service),
):
    result = await service.polling_status(polling_id)
    if result.status == NOT_FOUND:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=result.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
    return result


# =============================================================================
# Authenticated
# =============================================================================

@auth_router.get("/me")
async def me(user: Dict[str, Any] = Depends(get_current_user)):
    """Identity of the bearer, without embedded provider tokens."""
    return {"user": identity_from_credential(user)}


@auth_router.post("/logout", response_model=MessageResponse)
async def logout(
    user: Dict[str, Any] = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    await service.logout(user)
    return MessageResponse(message="Logged out successfully")
