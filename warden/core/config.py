"""
Warden Configuration Management

Centralized configuration for the authentication control plane with:
- Environment-based configuration
- Type-safe settings with Pydantic
- Per-subsystem sections (WebAuthn, OAuth, keys, rate limiting, sessions)
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for Warden."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class WebAuthnSettings(BaseModel):
    """Configuration for passkey ceremonies."""
    rp_name: str = "Warden"
    challenge_ttl_seconds: int = 300
    ceremony_timeout_ms: int = 60000
    sweep_interval_seconds: float = 60.0
    dev_port: int = 5173
    require_user_verification: bool = True


class OAuthClientSettings(BaseModel):
    """A statically registered OAuth client."""
    client_id: str
    client_name: str = ""
    redirect_uris: list[str] = Field(default_factory=list)
    application_type: Literal["native", "web"] = "native"
    public: bool = True
    client_secret: Optional[str] = None
    scopes: list[str] = Field(default_factory=lambda: ["openid", "profile", "email"])


class FederatedProviderSettings(BaseModel):
    """Credentials for an upstream identity provider."""
    client_id: str = ""
    client_secret: str = ""


class OAuthSettings(BaseModel):
    """Configuration for the authorization server and federated login."""
    issuer: str = "http://localhost:8000"
    authorization_code_ttl_seconds: int = 600
    access_token_ttl_seconds: int = 3600
    id_token_ttl_seconds: int = 3600
    state_cookie_max_age: int = 600
    supported_scopes: list[str] = Field(default_factory=lambda: ["openid", "profile", "email"])
    clients: list[OAuthClientSettings] = Field(
        default_factory=lambda: [
            OAuthClientSettings(
                client_id="warden-ios-app",
                client_name="Warden iOS",
                redirect_uris=["warden://auth/callback"],
                application_type="native",
                public=True,
            )
        ]
    )
    providers: dict[str, FederatedProviderSettings] = Field(default_factory=dict)


class KeySettings(BaseModel):
    """Configuration for the JWKS signing keys."""
    rotation_interval_days: int = 30
    rsa_key_size: int = 2048
    algorithm: str = "RS256"
    storage_key: str = "oidc:jwks:current"
    grace_keys: int = 1


class RateLimitRuleSettings(BaseModel):
    """A fixed-window limit for one endpoint."""
    max_requests: int
    window_seconds: int


class RateLimitSettings(BaseModel):
    """Configuration for fixed-window rate limiting."""
    enabled: bool = True
    default_rule: RateLimitRuleSettings = Field(
        default_factory=lambda: RateLimitRuleSettings(max_requests=100, window_seconds=3600)
    )
    rules: dict[str, RateLimitRuleSettings] = Field(
        default_factory=lambda: {
            "/oidc/auth": RateLimitRuleSettings(max_requests=100, window_seconds=3600),
            "/oidc/token": RateLimitRuleSettings(max_requests=200, window_seconds=3600),
            "/oidc/userinfo": RateLimitRuleSettings(max_requests=1000, window_seconds=3600),
            "/api/v1/oauth/clients/register": RateLimitRuleSettings(
                max_requests=10, window_seconds=86400
            ),
            "/api/v1/user/profile": RateLimitRuleSettings(max_requests=1000, window_seconds=3600),
        }
    )


class SessionSettings(BaseModel):
    """Configuration for request authentication."""
    cookie_name: str = "session"
    refresh_threshold_seconds: int = 900
    login_path: str = "/auth/login"
    api_path_prefixes: list[str] = Field(default_factory=lambda: ["/api/", "/oidc/"])


class BackendSettings(BaseModel):
    """Configuration for the persistence service client."""
    base_url: str = "http://localhost:8787"
    api_key: Optional[str] = None
    timeout: float = 10.0


class RedisSettings(BaseModel):
    """Configuration for the shared key/value store."""
    url: Optional[str] = None
    socket_timeout: float = 5.0


class WardenConfig(BaseSettings):
    """
    Main Warden Configuration

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with WARDEN_ (e.g., WARDEN_LOG_LEVEL=DEBUG)
    """

    environment: Literal["development", "staging", "production"] = "development"

    webauthn: WebAuthnSettings = Field(default_factory=WebAuthnSettings)
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    keys: KeySettings = Field(default_factory=KeySettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    log_level: LogLevel = LogLevel.INFO
    log_json: bool = True

    model_config = {
        "env_prefix": "WARDEN_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Accept lowercase level names."""
        if isinstance(v, str):
            return v.upper()
        return v

    @classmethod
    def from_file(cls, config_path: Path) -> "WardenConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            data = json.load(f)

        return cls(**data)


_config: Optional[WardenConfig] = None


def get_config() -> WardenConfig:
    """Get the global Warden configuration instance."""
    global _config
    if _config is None:
        _config = WardenConfig()
    return _config


def set_config(config: WardenConfig) -> None:
    """Set the global Warden configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
