"""
Configuration module for the OpenID Connect relying-party middleware.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider, the auth routes, transient cookies, the encrypted
application session and the route protection policy.

Environment variables are loaded from .env file or system environment.
"""

import json
from functools import lru_cache
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


RESPONSE_TYPES = (
    "id_token",
    "code id_token",
    "code",
    "id_token token",
    "code id_token token",
    "code token",
)

RESPONSE_MODES = ("query", "fragment", "form_post")

DEFAULT_IDENTITY_CLAIM_FILTER = (
    "aud,iss,iat,exp,nbf,nonce,azp,auth_time,s_hash,at_hash,c_hash"
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the identity provider (OIDC), the login/logout/callback
    routes, cookie handling and route protection is defined here.
    """

    # =========================================================================
    # Identity Provider Configuration
    # =========================================================================

    ISSUER_BASE_URL: str = Field(
        ...,
        description="Issuer URL used for discovery (e.g., https://idp.example)",
        min_length=1,
    )

    CLIENT_ID: str = Field(
        ...,
        description="Client ID registered with the identity provider",
        min_length=1,
    )

    CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret (required when response_type includes 'code')",
    )

    TOKEN_ENDPOINT_AUTH_METHOD: Optional[str] = Field(
        None,
        description="client_secret_basic, client_secret_post or none (derived when unset)",
    )

    CLOCK_TOLERANCE: int = Field(
        default=60,
        description="Clock skew tolerance in seconds for ID token validation",
        ge=0,
        le=600,
    )

    HTTP_TIMEOUT: float = Field(
        default=5.0,
        description="Timeout in seconds for calls to the identity provider",
        gt=0,
    )

    # =========================================================================
    # Application URLs and Routes
    # =========================================================================

    BASE_URL: str = Field(
        ...,
        description="Public base URL of this application (e.g., https://app.example.com)",
        min_length=1,
    )

    ROUTES: bool = Field(
        default=True,
        description="Install the login and logout routes",
    )

    LOGIN_PATH: str = Field(default="/login")
    LOGOUT_PATH: str = Field(default="/logout")
    REDIRECT_URI_PATH: str = Field(default="/callback")

    POST_LOGOUT_REDIRECT_URI: str = Field(
        default="/",
        description="Where to send the user after logout (relative to BASE_URL or absolute)",
    )

    IDP_LOGOUT: bool = Field(
        default=False,
        description="Also log the user out of the identity provider when it supports it",
    )

    # =========================================================================
    # Route Protection
    # =========================================================================

    REQUIRED: bool = Field(
        default=True,
        description="Require authentication for every route not owned by the auth router",
    )

    ERROR_ON_REQUIRED_AUTH: bool = Field(
        default=False,
        description="Return 401 instead of redirecting to login for unauthenticated requests",
    )

    # =========================================================================
    # Authorization Request Parameters
    # =========================================================================

    RESPONSE_TYPE: str = Field(default="id_token")
    RESPONSE_MODE: Optional[str] = Field(default="form_post")
    SCOPE: str = Field(default="openid profile email")

    AUTHORIZATION_PARAMS: Optional[str] = Field(
        None,
        description="JSON object of extra authorization request parameters",
    )

    # =========================================================================
    # Application Session (encrypted cookie)
    # =========================================================================

    APP_SESSION_SECRET: Optional[str] = Field(
        None,
        description="Secret for the encrypted session cookie; leave empty to use an external session",
        min_length=32,
    )

    APP_SESSION_NAME: str = Field(default="identity", min_length=1)

    APP_SESSION_DURATION: int = Field(
        default=7 * 24 * 60 * 60,
        description="Session lifetime in seconds",
        gt=0,
    )

    APP_SESSION_COOKIE_DOMAIN: Optional[str] = None
    APP_SESSION_COOKIE_PATH: str = "/"
    APP_SESSION_COOKIE_SECURE: Optional[bool] = None
    APP_SESSION_COOKIE_HTTPONLY: bool = True
    APP_SESSION_COOKIE_SAMESITE: str = "lax"
    APP_SESSION_COOKIE_EPHEMERAL: bool = False

    IDENTITY_CLAIM_FILTER: str = Field(
        default=DEFAULT_IDENTITY_CLAIM_FILTER,
        description="Comma-separated claim names never stored in the session",
    )

    # =========================================================================
    # Transient Cookies (nonce, state, returnTo)
    # =========================================================================

    TRANSIENT_SECRET: Optional[str] = Field(
        None,
        description="Secret used to sign transient cookies (falls back to the session or client secret)",
        min_length=32,
    )

    TRANSIENT_COOKIE_MAX_AGE: int = Field(
        default=600,
        description="Seconds a login attempt may take before its transient cookies are rejected",
        ge=60,
        le=3600,
    )

    LEGACY_SAME_SITE_COOKIE: bool = Field(
        default=True,
        description="Also write fallback cookies without SameSite for older user agents",
    )

    # =========================================================================
    # Logging
    # =========================================================================

    LOG_LEVEL: str = Field(default="INFO")

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra env vars not defined here
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def identity_claim_filter_list(self) -> List[str]:
        """
        Parse and return IDENTITY_CLAIM_FILTER as a clean list.

        Returns:
            List of claim names without whitespace.
        """
        return [
            claim.strip()
            for claim in self.IDENTITY_CLAIM_FILTER.split(",")
            if claim.strip()
        ]

    @property
    def authorization_params(self) -> Dict[str, Any]:
        """
        Build the configured authorization request parameters.

        Returns:
            Dictionary with response_type, scope, response_mode (when set)
            and any extra parameters from AUTHORIZATION_PARAMS.
        """
        params: Dict[str, Any] = {
            "response_type": self.RESPONSE_TYPE,
            "scope": self.SCOPE,
        }
        if self.RESPONSE_MODE:
            params["response_mode"] = self.RESPONSE_MODE
        if self.AUTHORIZATION_PARAMS:
            params.update(json.loads(self.AUTHORIZATION_PARAMS))
        return params

    @property
    def callback_method(self) -> str:
        """HTTP method the identity provider uses to deliver the callback."""
        return "POST" if self.RESPONSE_MODE == "form_post" else "GET"

    @property
    def transient_secret(self) -> str:
        """Secret used to sign transient cookies."""
        return self.TRANSIENT_SECRET or self.APP_SESSION_SECRET or self.CLIENT_SECRET or ""

    @property
    def token_endpoint_auth_method(self) -> str:
        """Client authentication method for the token endpoint."""
        if self.TOKEN_ENDPOINT_AUTH_METHOD:
            return self.TOKEN_ENDPOINT_AUTH_METHOD
        return "client_secret_basic" if self.CLIENT_SECRET else "none"

    @property
    def cookie_secure(self) -> bool:
        """Whether the session cookie gets the Secure attribute."""
        if self.APP_SESSION_COOKIE_SECURE is not None:
            return self.APP_SESSION_COOKIE_SECURE
        return urlparse(self.BASE_URL).scheme == "https"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("ISSUER_BASE_URL", "BASE_URL")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """
        Validate that URLs are absolute http(s) URLs.

        Raises:
            ValueError: If the URL has no scheme or host
        """
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(
                f"Invalid URL: '{v}'. Expected format: 'https://host.example.com'"
            )
        return v

    @field_validator("LOGIN_PATH", "LOGOUT_PATH", "REDIRECT_URI_PATH")
    @classmethod
    def enforce_leading_slash(cls, v: str) -> str:
        """Route paths always start with a slash."""
        return v if v.startswith("/") else "/" + v

    @field_validator("RESPONSE_TYPE")
    @classmethod
    def validate_response_type(cls, v: str) -> str:
        """
        Validate response_type is one of the supported OIDC flows.

        Raises:
            ValueError: If response type is not supported
        """
        normalized = " ".join(v.split())
        if normalized not in RESPONSE_TYPES:
            raise ValueError(
                f"RESPONSE_TYPE must be one of {list(RESPONSE_TYPES)}, got: {v}"
            )
        return normalized

    @field_validator("RESPONSE_MODE")
    @classmethod
    def validate_response_mode(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in RESPONSE_MODES:
            raise ValueError(
                f"RESPONSE_MODE must be one of {list(RESPONSE_MODES)}, got: {v}"
            )
        return v

    @field_validator("APP_SESSION_COOKIE_SAMESITE")
    @classmethod
    def validate_same_site(cls, v: str) -> str:
        if v.lower() not in ("lax", "strict", "none"):
            raise ValueError(f"APP_SESSION_COOKIE_SAMESITE must be lax, strict or none, got: {v}")
        return v.lower()

    @field_validator("AUTHORIZATION_PARAMS")
    @classmethod
    def validate_authorization_params(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return v
        try:
            parsed = json.loads(v)
        except ValueError as e:
            raise ValueError(f"AUTHORIZATION_PARAMS must be a JSON object: {e}")
        if not isinstance(parsed, dict):
            raise ValueError("AUTHORIZATION_PARAMS must be a JSON object")
        return v

    @model_validator(mode="after")
    def validate_flow(self) -> "Settings":
        """
        Cross-field checks on the configured OIDC flow.

        Raises:
            ValueError: If the flow cannot work with the given settings
        """
        response_types = self.RESPONSE_TYPE.split()

        if "openid" not in self.SCOPE.split():
            raise ValueError("SCOPE must contain 'openid'")

        if "code" in response_types and not self.CLIENT_SECRET:
            if self.TOKEN_ENDPOINT_AUTH_METHOD != "none":
                raise ValueError(
                    "CLIENT_SECRET is required when RESPONSE_TYPE includes 'code'"
                )

        # Tokens must never travel in the query string
        if self.RESPONSE_MODE == "query" and (
            "id_token" in response_types or "token" in response_types
        ):
            raise ValueError(
                f"RESPONSE_MODE 'query' cannot be used with RESPONSE_TYPE '{self.RESPONSE_TYPE}'"
            )

        if self.RESPONSE_MODE is None and "code" not in response_types:
            raise ValueError("RESPONSE_MODE is required for implicit flows")

        if not self.transient_secret:
            raise ValueError(
                "One of TRANSIENT_SECRET, APP_SESSION_SECRET or CLIENT_SECRET "
                "must be set to sign transient cookies"
            )

        return self


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

    Example:
        >>> from oidc_middleware.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.ISSUER_BASE_URL)
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    This is called during application startup, after the settings object
    itself validated, to surface softer problems.

    Returns:
        Dictionary with validation status and any warnings.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors = []
    warnings = []

    if not settings.APP_SESSION_SECRET:
        warnings.append(
            "APP_SESSION_SECRET is not set; an external session store must be supplied"
        )

    if not settings.TRANSIENT_SECRET and not settings.APP_SESSION_SECRET:
        warnings.append("Transient cookies are signed with CLIENT_SECRET")

    if not settings.cookie_secure:
        warnings.append("Session cookie is not marked Secure (BASE_URL is not https)")

    if settings.RESPONSE_MODE == "form_post" and not settings.cookie_secure:
        warnings.append(
            "form_post callbacks need SameSite=None cookies, which browsers only accept over https"
        )

    routes = [settings.LOGIN_PATH, settings.LOGOUT_PATH, settings.REDIRECT_URI_PATH]
    if len(set(routes)) != len(routes):
        errors.append("LOGIN_PATH, LOGOUT_PATH and REDIRECT_URI_PATH must be distinct")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
    }
