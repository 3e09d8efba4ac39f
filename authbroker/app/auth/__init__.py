"""
Authentication Package

This package runs the OAuth 2.0 authorization-code flow with PKCE against
one OpenID Connect identity provider on behalf of mobile/web clients, and
re-issues the resolved identity as the broker's own credential pair.

Modules:
- utils: PKCE, random identifiers, unverified decoding, header parsing
- tokens: Credential codec (sign/verify the broker's access/refresh JWTs)
- session_store: Authorization sessions (state, nonce, PKCE verifier)
- polling: Polling sessions for cross-origin delivery of the callback result
- provider: Identity provider adapter (authorize URL, token, userinfo, revoke)
- service: Exchange orchestrator composing the modules above
- templates: Callback page rendering
- dependencies, routes: FastAPI wiring

The authentication flow:
1. Client calls /auth/initialize and opens the returned authorization URL
2. User authenticates at the identity provider
3. Provider redirects the browser to /auth/callback with code and state
4. Client posts code, state and session id to /auth/exchange
5. Client uses the issued access token; /auth/refresh renews the pair
"""

from .routes import auth_router

__all__ = [
    "auth_router",
]
