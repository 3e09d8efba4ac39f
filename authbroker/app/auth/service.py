"""
Exchange Orchestrator
=====================

Composes the credential codec, the two session stores and the identity
provider adapter into the broker's protocols:

    initialize -> (browser at provider) -> callback -> exchange -> issued
    refresh

Security checks happen in a fixed order during exchange: the session must be
live, ``state`` must match (before any provider call), the session is
claimed so a second concurrent exchange cannot reuse it, and the ID token
``nonce`` must match the session's nonce.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jwt.exceptions import InvalidTokenError

from ..errors import (
    AuthenticationError,
    ExternalServiceError,
    InvalidCredential,
    InvalidSession,
    NonceMismatch,
    NoTokenProvided,
    StateMismatch,
    ValidationError,
)
from ..models import (
    Claims,
    ExchangeResponse,
    InitializeResponse,
    PollingStartResponse,
    PollingStatusResponse,
    TokenPairResponse,
    UserProfile,
)
from .polling import PollingSessionStore
from .provider import IdentityProviderClient, is_token_binding_failure
from .session_store import AuthorizationSessionStore
from .templates import CallbackArtifact
from .tokens import ACCESS, REFRESH, CredentialCodec
from .utils import (
    extract_token_from_header,
    generate_code_challenge,
    generate_code_verifier,
    generate_nonce,
    generate_state,
)

logger = logging.getLogger(__name__)

# Claims of our own credential that are not part of the user's identity
CREDENTIAL_FIELDS = ("exp", "iat", "nbf", "jti", "type", "provider_tokens")


def identity_from_credential(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if k not in CREDENTIAL_FIELDS}


class AuthService:
    """
    Authentication session and token-exchange orchestrator.

    All collaborators are injected; the service owns no global state.
    """

    def __init__(
        self,
        *,
        provider: IdentityProviderClient,
        codec: CredentialCodec,
        sessions: AuthorizationSessionStore,
        polling: PollingSessionStore,
    ):
        self.provider = provider
        self.codec = codec
        self.sessions = sessions
        self.polling = polling

    # =========================================================================
    # Initialize
    # =========================================================================

    async def initialize(
        self,
        redirect_uri: Optional[str],
        client_state: Optional[str] = None,
    ) -> InitializeResponse:
        """
        Start an authorization attempt.

        Generates state (unless the client supplied one), nonce and a PKCE
        pair, stores them in a new session and builds the provider URL.
        """
        state = client_state or generate_state()
        nonce = generate_nonce()
        code_verifier = generate_code_verifier()

        session = await self.sessions.create(
            state=state,
            nonce=nonce,
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
        )

        authorization_url = self.provider.build_authorization_url(
            state=state,
            nonce=nonce,
            code_challenge=generate_code_challenge(code_verifier),
            redirect_uri=redirect_uri,
        )

        logger.info("OAuth flow initialized", extra={"session_id": session.session_id})

        return InitializeResponse(
            authorization_url=authorization_url,
            session_id=session.session_id,
            state=state,
        )

    # =========================================================================
    # Callback
    # =========================================================================

    async def handle_callback(
        self,
        *,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> CallbackArtifact:
        """
        Turn the provider redirect into a callback page artifact.

        The authorization session is not consulted here; only a polling
        session waiting on the same state is resolved.

        Raises:
            ValidationError: Neither an error nor both code and state present
        """
        if error:
            logger.warning(
                "OAuth callback error",
                extra={"error": error, "error_description": error_description},
            )
            if state:
                await self.polling.update_by_state(
                    state,
                    {"error": error, "error_description": error_description, "state": state},
                )
            return CallbackArtifact.failed(error, error_description, state)

        if not code or not state:
            raise ValidationError("Missing required parameters")

        await self.polling.update_by_state(state, {"code": code, "state": state})
        return CallbackArtifact.succeeded(code, state)

    # =========================================================================
    # Exchange
    # =========================================================================

    async def exchange(self, *, code: str, state: str, session_id: str) -> ExchangeResponse:
        """
        Exchange an authorization code for a self-issued credential pair.

        Raises:
            InvalidSession: Unknown, expired or concurrently claimed session
            StateMismatch: ``state`` differs from the session's state
            NonceMismatch: ID token nonce differs from the session's nonce
            ExternalServiceError: Provider failure (other than the userinfo
                                  token-binding fallback)
        """
        session = await self.sessions.get(session_id)
        if session is None:
            raise InvalidSession()

        if session.state != state:
            logger.warning("State mismatch on exchange", extra={"session_id": session_id})
            raise StateMismatch()

        session = await self.sessions.claim(session_id)
        if session is None:
            raise InvalidSession()

        issued = False
        try:
            token_response = await self.provider.exchange_code(
                code=code,
                code_verifier=session.code_verifier,
                redirect_uri=session.redirect_uri,
            )

            logger.info(
                "Token exchange response",
                extra={
                    "has_access_token": bool(token_response.get("access_token")),
                    "has_refresh_token": bool(token_response.get("refresh_token")),
                    "has_id_token": bool(token_response.get("id_token")),
                    "expires_in": token_response.get("expires_in"),
                },
            )

            access_token = token_response.get("access_token")
            if not access_token:
                raise ExternalServiceError("Token response missing access_token")

            id_token_claims = self._decode_id_token(token_response.get("id_token"), session.nonce)
            identity = await self.resolve_identity(access_token, id_token_claims)

            provider_tokens = {
                "access_token": access_token,
                "refresh_token": token_response.get("refresh_token"),
                "id_token": token_response.get("id_token"),
                "expires_in": token_response.get("expires_in"),
            }
            pair = self.codec.issue_pair(identity, provider_tokens)
            issued = True
        finally:
            if issued:
                await self.sessions.delete(session_id)
            else:
                await self.sessions.release(session_id)

        logger.info("Code exchanged successfully", extra={"user_id": identity.sub})

        return ExchangeResponse(**pair.model_dump(), user=UserProfile.from_claims(identity))

    def _decode_id_token(self, id_token: Optional[str], expected_nonce: str) -> Claims:
        if not id_token:
            return Claims()

        try:
            decoded = self.codec.decode_unsafe(id_token)
        except InvalidTokenError as e:
            logger.error(f"Failed to decode ID token: {e}")
            raise ExternalServiceError("Invalid ID token received from identity provider") from e

        if decoded.get("nonce") and decoded["nonce"] != expected_nonce:
            raise NonceMismatch()

        logger.info("ID token decoded successfully", extra={"user_id": decoded.get("sub")})
        return Claims.model_validate(decoded)

    async def resolve_identity(self, access_token: str, id_token_claims: Claims) -> Claims:
        """
        Resolve the final claim set.

        Userinfo is fetched first. If the provider refuses it with a
        token-binding / bad-request failure and the ID token carried a
        subject, the ID token claims alone are used. ID token claims win
        every conflict with userinfo.

        Raises:
            ExternalServiceError: Userinfo failed otherwise, or no subject
                                  could be resolved
        """
        try:
            user_info = Claims.model_validate(await self.provider.fetch_user_info(access_token))
        except ExternalServiceError as e:
            if not (is_token_binding_failure(e) and id_token_claims.sub):
                raise
            logger.warning(
                "UserInfo endpoint failed, using ID token claims as fallback",
                extra={"provider_status": e.provider_status},
            )
            user_info = Claims()

        identity = user_info.merged_with(id_token_claims)
        if not identity.sub:
            raise ExternalServiceError("Identity provider returned no subject")
        return identity

    # =========================================================================
    # Refresh
    # =========================================================================

    def refresh(self, refresh_token: str) -> TokenPairResponse:
        """
        Issue a new pair from a refresh credential.

        The new access token carries the subject only; no stale claims are
        replayed.

        Raises:
            InvalidCredential: Any verification failure of the refresh token
        """
        try:
            decoded = self.codec.verify(refresh_token, REFRESH)
        except AuthenticationError as e:
            logger.error("Token refresh failed", extra={"reason": e.code})
            raise InvalidCredential() from e

        pair = self.codec.issue_pair({"sub": decoded["sub"]})
        logger.info("Token refreshed", extra={"user_id": decoded["sub"]})
        return pair

    # =========================================================================
    # Polling
    # =========================================================================

    async def start_polling(self, *, state: str, session_id: Optional[str]) -> PollingStartResponse:
        session = await self.polling.create(state=state, session_id=session_id)
        return PollingStartResponse(
            polling_id=session.polling_id,
            expires_at=datetime.fromtimestamp(session.expires_at, tz=timezone.utc),
        )

    async def polling_status(self, polling_id: str) -> PollingStatusResponse:
        return await self.polling.status(polling_id)

    # =========================================================================
    # Bearer Credentials
    # =========================================================================

    def authenticate(self, authorization: Optional[str]) -> Dict[str, Any]:
        """
        Verify the access credential of an ``Authorization: Bearer`` header.

        Raises:
            NoTokenProvided: Header absent or not a Bearer header
            ExpiredCredential, MalformedCredential, WrongCredentialType
        """
        token = extract_token_from_header(authorization)
        if not token:
            raise NoTokenProvided()
        return self.codec.verify(token, ACCESS)

    async def logout(self, payload: Dict[str, Any]) -> None:
        """Best-effort revocation of the provider tokens embedded in a credential"""
        provider_tokens = payload.get("provider_tokens") or {}
        if provider_tokens.get("refresh_token"):
            await self.provider.revoke_token(provider_tokens["refresh_token"], "refresh_token")
        if provider_tokens.get("access_token"):
            await self.provider.revoke_token(provider_tokens["access_token"], "access_token")
        logger.info("User logged out", extra={"user_id": payload.get("sub")})
