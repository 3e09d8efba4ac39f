"""
Shared fixtures for the broker tests.

The identity provider is replaced by ``FakeIdentityProvider``, an
``httpx.MockTransport`` handler with per-endpoint canned responses, and ID
tokens are RS256-signed with a throwaway key pair.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from authbroker.app.auth.polling import InMemoryPollingSessionStore
from authbroker.app.auth.provider import IdentityProviderClient
from authbroker.app.auth.service import AuthService
from authbroker.app.auth.session_store import InMemoryAuthorizationSessionStore
from authbroker.app.auth.tokens import CredentialCodec
from authbroker.app.config import Settings

IDP_BASE_URL = "https://idp.example.test"
TEST_JWT_SECRET = "test-jwt-secret-0123456789abcdef0123456789"
TOKEN_PATH = "/oauth2/token"
USERINFO_PATH = "/oauth2/userinfo"
REVOKE_PATH = "/oauth2/revoke"


def _generate_private_key() -> str:
    """Generate an RSA private key (PEM) for signing fake ID tokens"""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


TEST_PRIVATE_KEY = _generate_private_key()


def make_id_token(claims: Dict[str, Any]) -> str:
    """Create an ID token the way the provider would (RS256, kid header)"""
    return jwt.encode(
        claims,
        TEST_PRIVATE_KEY,
        algorithm="RS256",
        headers={"kid": "test-key-id"},
    )


class FakeClock:
    """Manually advanced clock injected wherever ``time.time`` is used"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Responder = Union[Tuple[int, Any], Callable[[httpx.Request], httpx.Response]]


class FakeIdentityProvider:
    """
    Programmable identity provider behind ``httpx.MockTransport``.

    Responses are registered per (method, path) either as a
    ``(status, json_body)`` tuple or as a callable taking the request.
    Unregistered endpoints answer 404. Every request is recorded.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Responder] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, responder: Responder) -> None:
        self.routes[(method, path)] = responder

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.routes.get((request.method, request.url.path))
        if responder is None:
            return httpx.Response(404, json={"error": "not_found"})
        if callable(responder):
            return responder(request)
        status_code, body = responder
        return httpx.Response(status_code, json=body)

    def calls(self, method: Optional[str] = None, path: Optional[str] = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if (method is None or r.method == method) and (path is None or r.url.path == path)
        ]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=IDP_BASE_URL,
            transport=httpx.MockTransport(self.handler),
        )


def build_settings(**overrides) -> Settings:
    values = dict(
        IDP_CLIENT_ID="broker-client",
        IDP_CLIENT_SECRET="broker-client-secret",
        IDP_BASE_URL=IDP_BASE_URL,
        IDP_REDIRECT_URI="http://localhost:3000/auth/callback",
        JWT_SECRET=TEST_JWT_SECRET,
        ENVIRONMENT="test",
        LOG_LEVEL="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    return build_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def codec(clock) -> CredentialCodec:
    return CredentialCodec(TEST_JWT_SECRET, clock=clock)


@pytest.fixture
def provider(settings, idp) -> IdentityProviderClient:
    return IdentityProviderClient(settings, client=idp.client())


@pytest.fixture
def auth_service(provider, codec, clock) -> AuthService:
    return AuthService(
        provider=provider,
        codec=codec,
        sessions=InMemoryAuthorizationSessionStore(clock=clock),
        polling=InMemoryPollingSessionStore(clock=clock),
    )
