"""
Configuration management for the request gate.

Uses Pydantic Settings for environment variable handling and validation,
with an optional config.yaml providing defaults.
"""

import json
import os
import yaml
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        # Look for config.yaml in common locations
        possible_paths = [
            "config.yaml",  # Current directory
            "../../config.yaml",  # Project root from src/healthgate
        ]

        for path in possible_paths:
            if os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
            return config_data
    return {}


def _parse_json_mapping(v: Any) -> Any:
    """Accept JSON strings coming from environment variables."""
    if isinstance(v, str):
        try:
            return json.loads(v)
        except json.JSONDecodeError:
            return {}
    return v


class SecuritySettings(BaseSettings):
    """Authentication, transport and origin configuration."""

    production: bool = Field(default=False, description="Production posture: TLS and strict origin checks")
    trust_forwarded_proto: bool = Field(default=True, description="Honour X-Forwarded-Proto from the proxy")
    trust_forwarded_for: bool = Field(default=False, description="Take caller identity from X-Forwarded-For")
    allowed_origins: List[str] = Field(
        default=[
            "http://localhost:5000",
            "http://127.0.0.1:5000",
            "https://localhost:5000",
        ],
        description="Static origin allow-list"
    )
    api_key_header: str = Field(default="x-api-key", description="Header carrying the API key")
    api_key_query_params: List[str] = Field(
        default=["apiKey", "api_key"],
        description="Query parameters carrying the API key"
    )
    api_keys: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Seed API keys for the in-memory store (raw key -> metadata)"
    )
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy URL of the API key store")
    admin_token: str = Field(default="", description="Admin token for key management endpoints")

    @field_validator("api_keys", mode="before")
    def parse_api_keys(cls, v: Any) -> Dict[str, Dict[str, Any]]:
        """Parse API keys from JSON string if needed."""
        parsed = _parse_json_mapping(v)
        return parsed if isinstance(parsed, dict) else {}

    class Config:
        env_prefix = "HEALTHGATE_SECURITY_"


class DetectionSettings(BaseSettings):
    """Threat detection limits."""

    max_header_length: int = Field(default=8192, description="Maximum header value length")
    max_body_bytes: int = Field(default=10 * 1024 * 1024, description="Maximum declared body size (10MB)")
    max_depth: int = Field(default=32, description="Maximum payload nesting depth")
    log_value_chars: int = Field(default=100, description="Offending value prefix kept in logs")
    intrusion_detection: bool = Field(default=False, description="Enable the 403 intrusion variant")
    log_suspicious_access: bool = Field(default=True, description="Log access to sensitive-looking URLs")

    class Config:
        env_prefix = "HEALTHGATE_DETECTION_"


class RateLimitSettings(BaseSettings):
    """Fixed-window rate limit tiers."""

    tiers: Dict[str, Dict[str, int]] = Field(
        default={
            "strict": {"max_requests": 30, "window_seconds": 900},
            "auth": {"max_requests": 10, "window_seconds": 900},
            "normal": {"max_requests": 100, "window_seconds": 900},
        },
        description="Tier name -> ceiling and window"
    )
    route_tiers: Dict[str, List[str]] = Field(
        default={
            "auth": ["/api/auth"],
            "strict": ["/api/convert", "/api/admin", "/api/ai"],
        },
        description="Tier name -> path prefixes"
    )
    default_tier: str = Field(default="normal", description="Tier for unclassified routes")
    exempt_paths: List[str] = Field(default=["/api/system/health"], description="Never rate limited")
    max_tracked_scopes: int = Field(default=10000, description="Prune expired windows beyond this size")

    @field_validator("tiers", "route_tiers", mode="before")
    def parse_mappings(cls, v: Any) -> Any:
        return _parse_json_mapping(v)

    class Config:
        env_prefix = "HEALTHGATE_RATE_LIMIT_"


class ComplianceSettings(BaseSettings):
    """Regulatory annotation configuration."""

    health_data_paths: List[str] = Field(
        default=["/convert", "/patient", "/terminology"],
        description="Path fragments that carry health data"
    )
    personal_data_paths: List[str] = Field(
        default=["/convert", "/patient"],
        description="Path fragments that process personal data"
    )
    terminology_paths: List[str] = Field(default=["/terminology"], description="Terminology submission paths")
    allowed_terminology_systems: List[str] = Field(
        default=[
            "https://mos.esante.gouv.fr",
            "https://interop.esante.gouv.fr",
            "https://ansforge.esante.gouv.fr",
        ],
        description="Approved terminology authorities"
    )
    data_controller: str = Field(default="HealthGate Healthcare Platform", description="Data controller identity")
    privacy_policy: str = Field(default="/privacy-policy", description="Privacy policy pointer")
    data_retention: str = Field(default="7-years-medical-data", description="Retention policy")
    security_headers: Dict[str, str] = Field(
        default={
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "X-Permitted-Cross-Domain-Policies": "none",
            "Cross-Origin-Opener-Policy": "same-origin",
        },
        description="Baseline security headers on every response"
    )

    class Config:
        env_prefix = "HEALTHGATE_COMPLIANCE_"


class AuditSettings(BaseSettings):
    """Audit record configuration."""

    session_hash_length: int = Field(default=16, description="Truncated session hash length")
    sanitize_health_logs: bool = Field(default=True, description="Redact patient data in health-data logs")
    logger_name: str = Field(default="healthgate.audit", description="Audit logger name")

    class Config:
        env_prefix = "HEALTHGATE_AUDIT_"


class Settings(BaseSettings):
    """Main application settings."""

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=5000, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")

    # Component settings
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    compliance: ComplianceSettings = Field(default_factory=ComplianceSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)

    class Config:
        env_prefix = "HEALTHGATE_"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""

    # Load config file data
    config_data = load_config_file()

    # Config file provides defaults, env vars override
    if config_data:
        _set_env_from_config(config_data)

    settings = Settings()
    return settings


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    mappings = {
        ("server", "host"): "HEALTHGATE_HOST",
        ("server", "port"): "HEALTHGATE_PORT",
        ("server", "debug"): "HEALTHGATE_DEBUG",
        ("server", "log_level"): "HEALTHGATE_LOG_LEVEL",
        ("security", "production"): "HEALTHGATE_SECURITY_PRODUCTION",
        ("security", "trust_forwarded_for"): "HEALTHGATE_SECURITY_TRUST_FORWARDED_FOR",
        ("security", "database_url"): "HEALTHGATE_SECURITY_DATABASE_URL",
        ("security", "admin_token"): "HEALTHGATE_SECURITY_ADMIN_TOKEN",
        ("detection", "max_depth"): "HEALTHGATE_DETECTION_MAX_DEPTH",
        ("detection", "intrusion_detection"): "HEALTHGATE_DETECTION_INTRUSION_DETECTION",
    }

    for (section, key), env_var in mappings.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value is not None:
                os.environ[env_var] = str(value)

    # Structured values travel as JSON strings
    json_mappings = {
        ("security", "api_keys"): "HEALTHGATE_SECURITY_API_KEYS",
        ("security", "allowed_origins"): "HEALTHGATE_SECURITY_ALLOWED_ORIGINS",
        ("rate_limit", "tiers"): "HEALTHGATE_RATE_LIMIT_TIERS",
        ("rate_limit", "route_tiers"): "HEALTHGATE_RATE_LIMIT_ROUTE_TIERS",
        ("compliance", "allowed_terminology_systems"): "HEALTHGATE_COMPLIANCE_ALLOWED_TERMINOLOGY_SYSTEMS",
    }

    for (section, key), env_var in json_mappings.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value:
                os.environ[env_var] = json.dumps(value)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
