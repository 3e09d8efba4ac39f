"""
Configuration module for the Authentication Broker.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider (OIDC client), self-issued credential signing,
session lifetimes, and CORS settings.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the identity provider, credential signing,
    session stores and the HTTP surface is defined here. Settings are
    read-only after startup.
    """

    # =========================================================================
    # Identity Provider (OIDC client)
    # =========================================================================

    IDP_CLIENT_ID: str = Field(
        ...,
        description="OAuth client ID registered at the identity provider",
        min_length=1,
    )

    IDP_CLIENT_SECRET: str = Field(
        ...,
        description="OAuth client secret registered at the identity provider",
        min_length=1,
    )

    IDP_BASE_URL: str = Field(
        default="https://idp.test.certilia.com",
        description="Identity provider base URL (endpoints below are relative to it)",
    )

    IDP_AUTH_ENDPOINT: str = Field(default="/oauth2/authorize")
    IDP_TOKEN_ENDPOINT: str = Field(default="/oauth2/token")
    IDP_USERINFO_ENDPOINT: str = Field(default="/oauth2/userinfo")
    IDP_REVOKE_ENDPOINT: str = Field(default="/oauth2/revoke")
    IDP_DISCOVERY_ENDPOINT: str = Field(
        default="/oauth2/oidcdiscovery/.well-known/openid-configuration"
    )

    IDP_REDIRECT_URI: str = Field(
        default="http://localhost:3000/auth/callback",
        description="Default redirect URI when the client does not supply one",
    )

    IDP_SCOPES: str = Field(
        default="openid profile eid email offline_access",
        description="Space-separated scopes requested on every authorization",
    )

    IDP_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Timeout applied to every identity provider call",
        gt=0,
    )

    # =========================================================================
    # Self-issued Credential (JWT) Configuration
    # =========================================================================

    JWT_SECRET: str = Field(
        ...,
        description="Secret key for signing access/refresh tokens",
        min_length=32,
    )

    JWT_ALGORITHM: str = Field(
        default="HS256",
        description="JWT signing algorithm (fixed to HS256)",
    )

    ACCESS_TOKEN_EXPIRY_MINUTES: int = Field(
        default=60,
        description="Access token lifetime in minutes",
        ge=1,
        le=1440,
    )

    REFRESH_TOKEN_EXPIRY_DAYS: int = Field(
        default=7,
        description="Refresh token lifetime in days",
        ge=1,
        le=90,
    )

    # =========================================================================
    # Session Stores
    # =========================================================================

    AUTH_SESSION_TTL_SECONDS: int = Field(default=600, ge=1)
    AUTH_SESSION_SWEEP_SECONDS: int = Field(default=60, ge=1)
    POLLING_SESSION_TTL_SECONDS: int = Field(default=600, ge=1)
    POLLING_SESSION_SWEEP_SECONDS: int = Field(default=300, ge=1)

    SKIP_USERINFO_ENDPOINT: bool = Field(
        default=False,
        description="Answer /user/extended-info from credential claims only",
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    ENVIRONMENT: str = Field(
        default="development",
        description="development, production or test",
    )

    LOG_LEVEL: str = Field(default="INFO")

    HOST: str = Field(default="0.0.0.0")

    PORT: int = Field(default=3000, ge=1, le=65535)

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def scopes_list(self) -> List[str]:
        return self.IDP_SCOPES.split()

    @property
    def idp_base_url(self) -> str:
        return self.IDP_BASE_URL.rstrip("/")

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("JWT_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        """
        Only HS256 is accepted: a single symmetric secret signs every token.

        Raises:
            ValueError: If algorithm is anything else
        """
        if v != "HS256":
            raise ValueError(f"JWT algorithm must be HS256, got: {v}")
        return v

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "production", "test"]
        v = v.lower()
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}, got: {v}")
        return v

    @field_validator("IDP_SCOPES")
    @classmethod
    def validate_scopes(cls, v: str) -> str:
        if "openid" not in v.split():
            raise ValueError("IDP_SCOPES must include 'openid'")
        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    Called during application startup; errors are logged, warnings too.

    Returns:
        Dictionary with validation status and any warnings.
    """
    errors = []
    warnings = []

    if settings.is_production:
        if "change" in settings.JWT_SECRET.lower():
            errors.append("JWT_SECRET still holds a placeholder value")
        if not settings.IDP_BASE_URL.startswith("https://"):
            errors.append("IDP_BASE_URL must use https in production")
        if settings.SKIP_USERINFO_ENDPOINT:
            warnings.append("SKIP_USERINFO_ENDPOINT is enabled")

    if not settings.allowed_origins_list:
        warnings.append("ALLOWED_ORIGINS is empty (CORS disabled for browsers)")

    if "localhost" in settings.IDP_REDIRECT_URI and settings.is_production:
        warnings.append("IDP_REDIRECT_URI points to localhost")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "access_token_expiry_minutes": settings.ACCESS_TOKEN_EXPIRY_MINUTES,
        "refresh_token_expiry_days": settings.REFRESH_TOKEN_EXPIRY_DAYS,
    }


if __name__ == "__main__":
    """
    Validate your .env configuration:
        python -m authbroker.app.config
    """
    import json

    try:
        config = get_settings()
    except Exception as e:
        print(f"Configuration error: {e}")
        print("Required variables: IDP_CLIENT_ID, IDP_CLIENT_SECRET, JWT_SECRET")
        raise SystemExit(1)

    print(json.dumps(validate_configuration(config), indent=2))
