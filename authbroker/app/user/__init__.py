"""
User Package

Authenticated endpoints that act on behalf of the signed-in user with the
identity provider tokens embedded in their access credential.
"""

from .routes import user_router

__all__ = ["user_router"]
