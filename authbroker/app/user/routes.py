"""
User Routes
===========

Authenticated endpoints that use the provider tokens embedded in the
caller's access credential.

Endpoints:
----------
- GET /user/extended-info: Fresh userinfo claims from the identity provider,
  falling back to the credential's own claims when the provider refuses
  the embedded access token.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from ..auth.dependencies import get_auth_service, get_current_user
from ..auth.provider import IdentityProviderClient, is_token_binding_failure
from ..auth.service import AuthService, identity_from_credential
from ..auth.utils import convert_keys_to_snake_case
from ..errors import ExternalServiceError, ValidationError
from ..models import ExtendedUserInfoResponse

logger = logging.getLogger(__name__)

user_router = APIRouter(prefix="/user", tags=["user"])

USERINFO_ENDPOINT = "userinfo_endpoint"
JWT_CLAIMS = "jwt_claims"
JWT_CLAIMS_FALLBACK = "jwt_claims_fallback"


def _claims_user_info(payload: Dict[str, Any]) -> Dict[str, Any]:
    user_info = identity_from_credential(payload)
    user_info.pop("thumbnail", None)
    if not user_info.get("oib") and user_info.get("pin"):
        user_info["oib"] = user_info["pin"]
    return user_info


async def build_extended_user_info(
    provider: IdentityProviderClient,
    payload: Dict[str, Any],
    skip_userinfo: bool = False,
) -> ExtendedUserInfoResponse:
    """
    Build the extended user info of an access-credential payload.

    Raises:
        ValidationError: The credential carries no provider access token
        InvalidAccessToken: The provider rejected the embedded token (401)
        ExternalServiceError: Provider failure other than token binding
    """
    provider_tokens = payload.get("provider_tokens") or {}
    access_token = provider_tokens.get("access_token")
    if not access_token:
        logger.warning("No provider tokens found in credential", extra={"user_id": payload.get("sub")})
        raise ValidationError("No provider access token available. Please authenticate again.")

    if skip_userinfo:
        user_info = _claims_user_info(payload)
        source = JWT_CLAIMS
    else:
        try:
            user_info = await provider.fetch_user_info(access_token)
            source = USERINFO_ENDPOINT
        except ExternalServiceError as e:
            if not is_token_binding_failure(e):
                raise
            logger.warning(
                "Userinfo endpoint failed, using credential claims as fallback",
                extra={"provider_status": e.provider_status},
            )
            user_info = _claims_user_info(payload)
            source = JWT_CLAIMS_FALLBACK

    snake_case_info = convert_keys_to_snake_case(user_info)

    token_expiry = None
    expires_in = provider_tokens.get("expires_in")
    if isinstance(expires_in, (int, float)) and isinstance(payload.get("iat"), (int, float)):
        token_expiry = datetime.fromtimestamp(payload["iat"] + expires_in, tz=timezone.utc)

    return ExtendedUserInfoResponse(
        user_info=snake_case_info,
        source=source,
        available_fields=list(snake_case_info.keys()),
        token_expiry=token_expiry,
    )


@user_router.get("/extended-info", response_model=ExtendedUserInfoResponse)
async def extended_info(
    request: Request,
    user: Dict[str, Any] = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    settings = request.app.state.app_state.settings
    return await build_extended_user_info(
        service.provider,
        user,
        skip_userinfo=settings.SKIP_USERINFO_ENDPOINT,
    )
