"""
Identity Provider Adapter
=========================

Talks OAuth 2.0 / OIDC to the single configured identity provider:

- builds the authorization URL (PKCE S256, ``prompt=login``)
- exchanges authorization codes and refresh tokens at the token endpoint
- fetches userinfo, retrying once as a form POST when a GET answers 400
- revokes tokens on a best-effort basis
- reads the discovery document

Every call carries a fixed timeout; transport failures and unexpected
responses surface as ``ExternalServiceError``.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from ..config import Settings
from ..errors import (
    ExternalServiceError,
    InvalidAccessToken,
    InvalidRefreshToken,
)

logger = logging.getLogger(__name__)

USER_AGENT = "AuthBroker/1.0.0"


def _error_payload(response: httpx.Response) -> Dict[str, Any]:
    """Best-effort JSON error body of a failed provider response"""
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def is_token_binding_failure(exc: Exception) -> bool:
    """
    Whether a userinfo failure means "this access token cannot be used here"
    rather than "the provider is broken".

    Some providers bind access tokens to the client and reject userinfo
    calls from the broker with 400 / invalid_request; the ID token claims
    are then the only identity source.
    """
    if not isinstance(exc, ExternalServiceError):
        return False
    description = str(exc.provider_error.get("error_description") or "").lower()
    return (
        exc.provider_status == 400
        or exc.provider_error.get("error") == "invalid_request"
        or "token binding" in description
    )


class IdentityProviderClient:
    """
    Adapter over the provider's authorization, token, userinfo, revocation
    and discovery endpoints.

    Args:
        settings: Application settings (client credentials, endpoints, scopes)
        client: Optional preconfigured ``httpx.AsyncClient`` (tests inject one
                backed by ``httpx.MockTransport``)
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.idp_base_url,
            timeout=settings.IDP_TIMEOUT_SECONDS,
            headers={"User-Agent": USER_AGENT},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # =========================================================================
    # Authorization URL
    # =========================================================================

    def build_authorization_url(
        self,
        *,
        state: str,
        nonce: str,
        code_challenge: str,
        redirect_uri: Optional[str] = None,
    ) -> str:
        """
        Build the provider authorization URL.

        ``prompt=login`` forces re-authentication so a stale browser session
        at the provider is never silently reused.
        """
        settings = self._settings
        params = {
            "client_id": settings.IDP_CLIENT_ID,
            "redirect_uri": redirect_uri or settings.IDP_REDIRECT_URI,
            "response_type": "code",
            "scope": " ".join(settings.scopes_list),
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "prompt": "login",
        }

        url = f"{settings.idp_base_url}{settings.IDP_AUTH_ENDPOINT}?{urlencode(params)}"
        logger.info(
            "Building authorization URL",
            extra={"redirect_uri": params["redirect_uri"]},
        )
        return url

    # =========================================================================
    # Token Endpoint
    # =========================================================================

    async def _post_form(self, path: str, data: Dict[str, str]) -> httpx.Response:
        try:
            return await self._client.post(
                path,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Identity provider request failed: {e}", extra={"endpoint": path})
            raise ExternalServiceError(f"Identity provider unreachable: {type(e).__name__}") from e

    @staticmethod
    def _json_body(response: httpx.Response, what: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(f"Invalid {what} response from identity provider") from e
        if not isinstance(data, dict):
            raise ExternalServiceError(f"Invalid {what} response from identity provider")
        return data

    async def exchange_code(
        self,
        *,
        code: str,
        code_verifier: str,
        redirect_uri: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Exchange an authorization code (with its PKCE verifier) for tokens.

        Raises:
            ExternalServiceError: The provider's ``error_description`` on 400,
                                  a generic message otherwise
        """
        settings = self._settings
        response = await self._post_form(
            settings.IDP_TOKEN_ENDPOINT,
            {
                "grant_type": "authorization_code",
                "client_id": settings.IDP_CLIENT_ID,
                "client_secret": settings.IDP_CLIENT_SECRET,
                "code": code,
                "redirect_uri": redirect_uri or settings.IDP_REDIRECT_URI,
                "code_verifier": code_verifier,
            },
        )

        if response.status_code == 400:
            body = _error_payload(response)
            raise ExternalServiceError(
                body.get("error_description") or "Invalid authorization code",
                provider_status=400,
                provider_error=body,
            )
        if not response.is_success:
            raise ExternalServiceError(
                "Failed to exchange code for tokens",
                provider_status=response.status_code,
                provider_error=_error_payload(response),
            )

        return self._json_body(response, "token")

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        Run the ``refresh_token`` grant for a provider refresh token.

        Raises:
            InvalidRefreshToken: The provider answered 400
            ExternalServiceError: Any other failure
        """
        settings = self._settings
        response = await self._post_form(
            settings.IDP_TOKEN_ENDPOINT,
            {
                "grant_type": "refresh_token",
                "client_id": settings.IDP_CLIENT_ID,
                "client_secret": settings.IDP_CLIENT_SECRET,
                "refresh_token": refresh_token,
            },
        )

        if response.status_code == 400:
            raise InvalidRefreshToken()
        if not response.is_success:
            raise ExternalServiceError(
                "Failed to refresh access token",
                provider_status=response.status_code,
                provider_error=_error_payload(response),
            )

        return self._json_body(response, "token")

    # =========================================================================
    # Userinfo
    # =========================================================================

    async def fetch_user_info(self, access_token: str) -> Dict[str, Any]:
        """
        Fetch the userinfo claims for a provider access token.

        Tries GET with bearer auth first; on 400 retries once as a form POST
        with the token in the body.

        Raises:
            InvalidAccessToken: The provider answered 401
            ExternalServiceError: Any other failure, carrying the provider's
                                  status and error payload
        """
        endpoint = self._settings.IDP_USERINFO_ENDPOINT

        try:
            response = await self._client.get(
                endpoint,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            if response.status_code == 400:
                logger.info("GET userinfo failed, trying POST method")
                response = await self._client.post(
                    endpoint,
                    data={"access_token": access_token},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            logger.error(f"User info fetch error: {e}")
            raise ExternalServiceError(
                f"Failed to fetch user information: {type(e).__name__}"
            ) from e

        if response.status_code == 401:
            raise InvalidAccessToken()

        if not response.is_success:
            body = _error_payload(response)
            logger.error(
                "User info fetch error",
                extra={"status": response.status_code, "provider_error": body.get("error")},
            )
            raise ExternalServiceError(
                f"Failed to fetch user information: {body.get('error') or response.reason_phrase}",
                provider_status=response.status_code,
                provider_error=body,
            )

        return self._json_body(response, "userinfo")

    # =========================================================================
    # Revocation and Discovery
    # =========================================================================

    async def revoke_token(self, token: str, token_type_hint: str = "access_token") -> None:
        """
        Revoke a provider token. Failures are logged, never raised.
        """
        settings = self._settings
        try:
            response = await self._client.post(
                settings.IDP_REVOKE_ENDPOINT,
                data={
                    "token": token,
                    "token_type_hint": token_type_hint,
                    "client_id": settings.IDP_CLIENT_ID,
                    "client_secret": settings.IDP_CLIENT_SECRET,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Failed to revoke token",
                extra={"token_type": token_type_hint, "error": str(e)},
            )

    async def fetch_discovery_document(self) -> Dict[str, Any]:
        try:
            response = await self._client.get(self._settings.IDP_DISCOVERY_ENDPOINT)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError("Failed to fetch discovery configuration") from e
        return self._json_body(response, "discovery")
