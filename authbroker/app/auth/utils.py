"""
Authentication utilities for PKCE, correlation values and token inspection.

This module handles:
- Generating PKCE verifier/challenge pairs (S256)
- Generating state, nonce and opaque session identifiers
- Reading claims out of a not-yet-trusted provider ID token
- Extracting bearer tokens from Authorization headers
"""

import base64
import hashlib
import re
import secrets
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import DecodeError


# =============================================================================
# Random Values
# =============================================================================

def generate_random_string(num_bytes: int = 32) -> str:
    """
    Generate a URL-safe random string.

    Args:
        num_bytes: Entropy in bytes (32 bytes -> 43 characters)

    Returns:
        Base64-URL-encoded random string without padding
    """
    return base64.urlsafe_b64encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def generate_state() -> str:
    return generate_random_string(32)


def generate_nonce() -> str:
    return generate_random_string(32)


def generate_session_id() -> str:
    return generate_random_string(32)


def generate_polling_id() -> str:
    return secrets.token_hex(32)


# =============================================================================
# PKCE Helper Functions
# =============================================================================

_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters, unreserved charset)
    """
    return generate_random_string(32)


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def is_valid_code_verifier(verifier: str) -> bool:
    return bool(_VERIFIER_PATTERN.match(verifier or ""))


def verify_code_challenge(verifier: str, challenge: str) -> bool:
    return secrets.compare_digest(generate_code_challenge(verifier), challenge)


# =============================================================================
# Token Inspection
# =============================================================================

def decode_token_without_verification(token: str) -> Dict[str, Any]:
    """
    Decode a JWT without verifying its signature.

    Only used to read claims out of an ID token just received from the
    identity provider over TLS. Never use it to authorize a request.

    Raises:
        jwt.DecodeError: If the token is not a well-formed JWT
    """
    claims = jwt.decode(token, options={"verify_signature": False})
    if not isinstance(claims, dict):
        raise DecodeError("Token payload is not a JSON object")
    return claims


def extract_token_from_header(authorization: Optional[str]) -> Optional[str]:
    """
    Extract Bearer token from Authorization header.

    Returns:
        The token, or None when the header is absent or not a Bearer header
    """
    if not authorization:
        return None

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None

    return parts[1]


# =============================================================================
# Casing
# =============================================================================

def to_snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def convert_keys_to_snake_case(obj: Any) -> Any:
    """Recursively rename dict keys from camelCase to snake_case"""
    if isinstance(obj, list):
        return [convert_keys_to_snake_case(item) for item in obj]
    if isinstance(obj, dict):
        return {to_snake_case(key): convert_keys_to_snake_case(value) for key, value in obj.items()}
    return obj
