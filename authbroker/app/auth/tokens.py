"""
Credential Codec
================

Signs, verifies and decodes the broker's own bearer credentials.

Two token types are issued, both HS256-signed with one symmetric secret:

- access:  subject, the full flattened claim set, the provider's own tokens
           under ``provider_tokens``, ``iat``, ``exp``, ``jti``, ``type``
- refresh: subject, ``iat``, ``exp``, ``jti``, ``type`` only

The ``type`` claim is checked on every verification, so an access token is
never accepted where a refresh token is required and vice versa.
"""

import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Union

import jwt
from jwt.exceptions import InvalidTokenError

from ..errors import ExpiredCredential, MalformedCredential, WrongCredentialType
from ..models import Claims, TokenPairResponse
from .utils import decode_token_without_verification

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"

# Technical claims that are always regenerated and never copied from input
RESERVED_CLAIMS = frozenset({"exp", "iat", "nbf", "jti", "type", "provider_tokens"})


class CredentialCodec:
    """
    Issue and verify self-issued access/refresh credentials.

    Args:
        secret: HMAC signing secret
        access_ttl: Access token lifetime
        refresh_ttl: Refresh token lifetime
        clock: Returns the current UNIX time; used for issuing and for the
               expiry check so both sides agree
    """

    algorithm = "HS256"

    def __init__(
        self,
        secret: str,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("Signing secret must not be empty")
        self._secret = secret
        self._access_ttl = int(access_ttl.total_seconds())
        self._refresh_ttl = int(refresh_ttl.total_seconds())
        self._clock = clock

    # =========================================================================
    # Issuing
    # =========================================================================

    def _sign(self, payload: Dict[str, Any], token_type: str, ttl: int) -> str:
        now = int(self._clock())
        payload.update({
            "iat": now,
            "exp": now + ttl,
            "jti": str(uuid.uuid4()),
            "type": token_type,
        })
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def issue_access_token(
        self,
        claims: Mapping[str, Any],
        provider_tokens: Optional[Mapping[str, Any]] = None,
    ) -> str:
        payload = {k: v for k, v in claims.items() if k not in RESERVED_CLAIMS}
        if provider_tokens:
            payload["provider_tokens"] = dict(provider_tokens)
        return self._sign(payload, ACCESS, self._access_ttl)

    def issue_refresh_token(self, subject: str) -> str:
        return self._sign({"sub": subject}, REFRESH, self._refresh_ttl)

    def issue_pair(
        self,
        claims: Union[Claims, Mapping[str, Any]],
        provider_tokens: Optional[Mapping[str, Any]] = None,
    ) -> TokenPairResponse:
        """
        Issue an access/refresh pair for a resolved identity.

        Args:
            claims: Resolved claim set; must carry ``sub``
            provider_tokens: Identity provider tokens embedded verbatim in
                             the access token

        Raises:
            ValueError: If the claim set has no subject
        """
        payload = claims.to_payload() if isinstance(claims, Claims) else dict(claims)
        subject = payload.get("sub")
        if not subject:
            raise ValueError("Missing required claim: 'sub'")

        access_token = self.issue_access_token(payload, provider_tokens)
        refresh_token = self.issue_refresh_token(str(subject))

        logger.debug(
            "Issued credential pair",
            extra={"user_id": subject, "expires_in": self._access_ttl},
        )

        return TokenPairResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type="Bearer",
            expires_in=self._access_ttl,
            refresh_expires_in=self._refresh_ttl,
        )

    # =========================================================================
    # Verification
    # =========================================================================

    def verify(self, token: str, expected_type: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify signature, structure, expiry and type of a credential.

        Raises:
            ExpiredCredential: Token is past its expiry
            MalformedCredential: Signature or structure is invalid
            WrongCredentialType: ``type`` differs from ``expected_type``
        """
        if not token:
            raise MalformedCredential()

        try:
            decoded = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={
                    "verify_signature": True,
                    # expiry is checked below against the codec's clock
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_aud": False,
                    "require": ["exp", "iat", "jti", "sub", "type"],
                },
            )
        except InvalidTokenError as e:
            logger.warning(f"Invalid credential: {e}")
            raise MalformedCredential() from e

        if not isinstance(decoded.get("exp"), (int, float)):
            raise MalformedCredential()

        if decoded["exp"] <= self._clock():
            raise ExpiredCredential()

        if expected_type and decoded.get("type") != expected_type:
            logger.warning(
                "Credential type mismatch",
                extra={"expected_type": expected_type, "actual_type": decoded.get("type")},
            )
            raise WrongCredentialType()

        return decoded

    @staticmethod
    def decode_unsafe(token: str) -> Dict[str, Any]:
        """Decode without verification. Provider ID tokens only."""
        return decode_token_without_verification(token)
