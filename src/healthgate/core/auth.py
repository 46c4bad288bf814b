"""
API key authentication.

Authentication at this layer is advisory: it meters usage and attaches the
key record to the request, but never blocks. Missing, unknown or revoked
keys pass through unauthenticated; store failures do too (fail-open for
this stage only). Routes that need a key depend on require_api_key.
"""

import secrets
from dataclasses import dataclass
from typing import Mapping, Optional

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import SecuritySettings
from .audit import RequestLogger
from .exceptions import AuthenticationError
from .keystore import ApiKeyRecord, ApiKeyStore, hash_api_key

logger = structlog.get_logger(__name__)

admin_security = HTTPBearer(auto_error=False)


def key_prefix(raw_key: str) -> str:
    """Loggable form of a raw key."""
    return raw_key[:8] + "..." if len(raw_key) >= 8 else "invalid"


@dataclass(frozen=True)
class AuthResult:
    """What authentication attached to the request."""

    authenticated: bool
    record: Optional[ApiKeyRecord] = None
    outcome: str = "missing"


class ApiKeyAuthenticator:
    """Resolves a caller-supplied key to an account record and meters usage."""

    def __init__(self, store: ApiKeyStore, settings: SecuritySettings) -> None:
        self.store = store
        self.settings = settings

    def extract_key(self, headers: Mapping[str, str], query: Mapping[str, str]) -> Optional[str]:
        """Header first, then the configured query parameters."""
        raw_key = headers.get(self.settings.api_key_header)
        if raw_key:
            return raw_key.strip() or None
        for name in self.settings.api_key_query_params:
            value = query.get(name)
            if value:
                return value.strip() or None
        return None

    async def authenticate(self, raw_key: Optional[str], log: RequestLogger) -> AuthResult:
        if not raw_key:
            log.debug("No API key supplied")
            return AuthResult(authenticated=False, outcome="missing")

        try:
            record = await self.store.touch_active(hash_api_key(raw_key))
        except Exception as e:
            # AuthLookupFailure and anything unexpected alike
            log.warning(
                "API key lookup failed, continuing unauthenticated",
                error=str(e),
                error_type=type(e).__name__,
            )
            return AuthResult(authenticated=False, outcome="error")

        if record is None:
            log.warning("Invalid or inactive API key", key=key_prefix(raw_key))
            return AuthResult(authenticated=False, outcome="invalid")

        log.debug(
            "API key validated",
            key=key_prefix(raw_key),
            application=record.application_name,
            usage_count=record.usage_count,
        )
        return AuthResult(authenticated=True, record=record, outcome="authenticated")


async def require_api_key(request: Request) -> ApiKeyRecord:
    """
    Dependency for routes that need an authenticated caller.

    The gate middleware must run first; it stores its context on request.state.
    """
    context = getattr(request.state, "gate", None)
    if context is None or not context.authenticated or context.api_key is None:
        raise AuthenticationError()
    return context.api_key


async def authenticate_admin_token(
    request: Request,
    token: Optional[HTTPAuthorizationCredentials] = Depends(admin_security),
) -> str:
    """
    Authenticate the admin bearer token for key management routes.

    An empty configured admin token disables the admin API entirely.
    """
    settings = request.app.state.settings
    expected = settings.security.admin_token

    if not token or not token.credentials:
        raise AuthenticationError("Missing admin token")

    token_value = token.credentials.strip()
    if not expected or not secrets.compare_digest(token_value, expected):
        logger.warning("Admin authentication failed", token=key_prefix(token_value))
        raise AuthenticationError("Invalid admin token")

    return token_value
