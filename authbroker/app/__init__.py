"""
Authentication Broker Application
=================================

Shields mobile and web clients from the OpenID Connect details of one
identity provider: the broker runs the authorization-code flow with PKCE,
resolves the user's claims and issues its own short-lived access/refresh
credentials.

Packages:
    - auth: authorization sessions, polling sessions, provider adapter,
            credential codec and the exchange orchestrator
    - user: authenticated user endpoints
"""

__version__ = "1.0.0"
