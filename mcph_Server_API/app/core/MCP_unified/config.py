"""
Configuration management for the MCP crates server

All sensitive configuration is loaded from environment variables or a local .env file.
No hardcoded secrets allowed.
"""

import os
import sys
import secrets
from typing import Annotated, Optional, Dict, Any, List
from functools import lru_cache

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from loguru import logger


def _default_cors_headers() -> list[str]:
    return [
        "Origin",
        "X-Requested-With",
        "Content-Type",
        "Accept",
        "Authorization",
        "x-authorization",
        "mcp-session-id",
        "MCP-Protocol-Version",
    ]


def _split_csv(v):
    if isinstance(v, str):
        return [item.strip() for item in v.split(",") if item.strip()]
    return v


class MCPConfig(BaseSettings):
    """
    MCP server configuration with secure defaults and environment variable support.

    Every field can be overridden with an ``MCP_``-prefixed environment variable,
    e.g. ``MCP_THROTTLE_MAX_REQUESTS=120``.
    """

    # Server Configuration
    server_name: str = "mcph-crates"
    server_version: str = "1.0.0"
    protocol_version: str = "2024-11-05"
    debug_mode: bool = False
    environment: str = "development"
    host: str = "127.0.0.1"
    port: int = Field(default=8000, validation_alias=AliasChoices("MCP_PORT", "PORT", "port"))
    public_base_url: str = Field(
        default="https://mcph.io",
        validation_alias=AliasChoices("MCP_PUBLIC_BASE_URL", "NEXT_PUBLIC_BASE_URL", "public_base_url"),
    )

    # Throttling Configuration
    throttle_enabled: bool = True
    throttle_max_requests: int = Field(default=60, ge=1)
    throttle_window_seconds: int = Field(default=60, ge=1)
    throttle_backend: str = "memory"
    trust_x_forwarded_for: bool = False
    throttle_exempt_paths: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["/healthz", "/health/live", "/health/ready"]
    )

    # Redis Configuration (Optional - for distributed throttling)
    redis_url: Optional[str] = None

    # Timeouts
    request_timeout_ms: int = Field(default=30000, ge=1)
    standard_timeout_ms: int = Field(default=1000, ge=1)
    blob_operation_timeout_seconds: float = 10.0
    metadata_operation_timeout_seconds: float = 5.0

    # CORS Configuration
    cors_enabled: bool = True
    cors_origins: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["*"])
    cors_allow_methods: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["GET", "POST", "OPTIONS", "DELETE"]
    )
    cors_allow_headers: Annotated[List[str], NoDecode] = Field(default_factory=_default_cors_headers)

    # Security Headers
    security_headers_enabled: bool = True
    csp_policy: str = "default-src 'self'; frame-ancestors 'none'; base-uri 'self'"

    # Streaming transport
    sse_enabled: bool = True
    sse_heartbeat_seconds: float = Field(default=15.0, gt=0)
    sse_max_sessions: int = Field(default=1000, ge=1)

    # Identity
    anonymous_tools: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["crates_get"])
    api_key_pepper: Optional[SecretStr] = Field(default=None, validate_default=True)
    api_key_cache_ttl_seconds: int = Field(default=60, ge=0)
    api_key_cache_max_entries: int = Field(default=10000, ge=1)
    api_key_last_used_cooldown_seconds: int = Field(default=300, ge=0)
    monthly_tool_call_limit: int = 1000

    # OAuth broker
    oauth_session_ttl_seconds: int = Field(default=300, ge=1)
    oauth_sweep_interval_seconds: int = Field(default=300, ge=1)
    oauth_access_token_ttl_seconds: int = Field(default=3600, ge=1)
    oauth_client_registry_path: str = "./Databases/oauth_clients.json"
    oauth_strict_clients: bool = False
    oauth_upstream_authorize_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    oauth_upstream_token_url: Optional[str] = None
    oauth_upstream_userinfo_url: Optional[str] = None
    oauth_upstream_scope: str = "openid email profile"
    oauth_upstream_client_id: Optional[str] = None
    oauth_upstream_client_secret: Optional[SecretStr] = None

    # Health
    health_probe_timeout_seconds: float = Field(default=3.0, gt=0)

    # Metrics
    metrics_enabled: bool = True
    metrics_max_samples: int = Field(default=1000, ge=1)
    metrics_window_hours: int = Field(default=24, ge=1)
    slow_request_threshold_ms: int = 1000
    admin_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("MCP_ADMIN_KEY", "ADMIN_KEY", "admin_key"),
    )

    # Logging Configuration
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_rotation: str = "100 MB"
    log_retention: str = "30 days"

    # Audit Logging
    audit_enabled: bool = False
    audit_log_file: str = "audit.log"

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("api_key_pepper", mode="before")
    @classmethod
    def validate_api_key_pepper(cls, v):
        """Ensure the API key pepper is set and long enough"""
        if not v:
            logger.warning("API key pepper not provided, generating a random one (keys will not survive restart)")
            return SecretStr(secrets.token_urlsafe(32))

        if isinstance(v, str):
            if len(v) < 16:
                raise ValueError("API key pepper must be at least 16 characters long")
            return SecretStr(v)

        return v

    @field_validator(
        "cors_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "anonymous_tools",
        "throttle_exempt_paths",
        mode="before",
    )
    @classmethod
    def parse_csv_lists(cls, v):
        """Parse comma-separated lists from env"""
        return _split_csv(v)

    @field_validator("throttle_backend")
    @classmethod
    def validate_throttle_backend(cls, v):
        v = (v or "memory").strip().lower()
        if v not in {"memory", "redis"}:
            raise ValueError("throttle_backend must be 'memory' or 'redis'")
        return v

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")

    def get_redis_connection_params(self) -> Optional[Dict[str, Any]]:
        """Get Redis connection parameters if Redis is configured"""
        if not self.redis_url:
            return None
        return {
            "url": self.redis_url,
            "encoding": "utf-8",
            "decode_responses": True,
            "socket_connect_timeout": 1,
        }

    def configure_logging(self):
        """Configure logging using a safe, non-colorized formatter.

        Avoids angle-bracket color tags so messages containing characters such as
        '<module>' or JSON braces render verbatim.
        """
        if os.getenv("MCP_INHERIT_GLOBAL_LOGGER", "").lower() in {"1", "true", "yes", "on"}:
            return

        _fmt_template = (
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{name}:{function}:{line} - {message}"
        )

        logger.remove()

        logger.add(
            sink=sys.stderr,
            format=_fmt_template,
            level=self.log_level,
            colorize=False,
        )

        if self.log_file:
            logger.add(
                sink=self.log_file,
                format=_fmt_template,
                level=self.log_level,
                rotation=self.log_rotation,
                retention=self.log_retention,
                compression="zip",
            )

        if self.audit_enabled:
            logger.add(
                sink=self.audit_log_file,
                format="{time:YYYY-MM-DD HH:mm:ss.SSS} | AUDIT | {message}",
                level="INFO",
                filter=lambda record: "audit" in record["extra"],
                rotation="1 day",
                retention="90 days",
                compression="zip",
            )


@lru_cache()
def get_config() -> MCPConfig:
    """Get cached configuration instance"""
    try:
        config = MCPConfig()
        config.configure_logging()
        logger.info("MCP configuration loaded successfully")
        return config
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise


def validate_config(config: Optional[MCPConfig] = None) -> bool:
    """Validate configuration on startup"""
    config = config or get_config()

    if config.throttle_backend == "redis" and not config.redis_url:
        logger.error("Redis throttle backend selected but MCP_REDIS_URL is not set")
        return False

    if config.standard_timeout_ms > config.request_timeout_ms:
        logger.error("Standard timeout cannot exceed the request timeout")
        return False

    if not config.debug_mode:
        if "*" in config.cors_origins:
            logger.warning("Wildcard CORS origin configured - not recommended for production")
        if not config.admin_key:
            logger.warning("MCP_ADMIN_KEY not set; POST /metrics/reset is disabled")
        if config.oauth_upstream_token_url is None:
            logger.warning("No upstream token endpoint configured; OAuth callback uses the passthrough provider")

    logger.info("Configuration validation passed")
    return True
