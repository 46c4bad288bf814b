"""
Regulatory compliance annotation.

- Health-data routes: non-cacheable headers, health-data marker
- Terminology submissions: coding system must come from an approved authority
- Every response: transparency and baseline security headers
- Production posture: HTTPS required, origins allow-listed
"""

from typing import Any, Dict, Iterable, List, Optional

import structlog

from ..config import ComplianceSettings, SecuritySettings
from .exceptions import ComplianceViolation

logger = structlog.get_logger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _matches_any(path: str, fragments: Iterable[str]) -> bool:
    return any(fragment in path for fragment in fragments)


def _under_authority(system: str, authority: str) -> bool:
    """system is the authority itself or a path below it."""
    authority = authority.rstrip("/")
    return system == authority or system.startswith(authority + "/")


class ComplianceAnnotator:
    """Attaches regulatory headers and enforces the allow-lists."""

    def __init__(self, settings: ComplianceSettings, security: SecuritySettings) -> None:
        self.settings = settings
        self.security = security

    def contains_health_data(self, path: str) -> bool:
        return _matches_any(path, self.settings.health_data_paths)

    def processes_personal_data(self, path: str) -> bool:
        return _matches_any(path, self.settings.personal_data_paths)

    def is_terminology_path(self, path: str) -> bool:
        return _matches_any(path, self.settings.terminology_paths)

    def response_headers(self, path: str, health_data: bool) -> Dict[str, str]:
        """Headers every response for path carries, whatever its status."""
        headers = dict(self.settings.security_headers)
        headers.update({
            "X-Data-Controller": self.settings.data_controller,
            "X-Privacy-Policy": self.settings.privacy_policy,
            "X-Data-Retention": self.settings.data_retention,
        })
        if health_data:
            headers.update(NO_CACHE_HEADERS)
            headers["X-Health-Data"] = "true"
            headers["X-Data-Classification"] = "sensitive"
        if self.processes_personal_data(path):
            headers["X-Personal-Data-Processing"] = "true"
        return headers

    def enforce_transport(self, scheme: str, forwarded_proto: Optional[str]) -> None:
        """In production, reject requests that did not arrive over HTTPS."""
        if not self.security.production:
            return
        if scheme == "https":
            return
        if self.security.trust_forwarded_proto and forwarded_proto:
            # Proxies may append: "https, http"
            if forwarded_proto.split(",")[0].strip().lower() == "https":
                return
        raise ComplianceViolation(
            "Health data requires a secure HTTPS connection",
            error_code="HTTPS_REQUIRED",
            error="HTTPS required",
            status_code=426,
        )

    def enforce_origin(self, origin: Optional[str], application_origins: Optional[List[str]] = None) -> None:
        """In production, an Origin must be statically or per-application allow-listed."""
        if not self.security.production or not origin:
            return
        allowed = set(self.security.allowed_origins)
        allowed.update(application_origins or [])
        if origin not in allowed:
            raise ComplianceViolation(
                "Origin not allowed",
                error_code="CORS_ORIGIN_NOT_ALLOWED",
                error="Origin not allowed",
                status_code=403,
            )

    def enforce_terminology(self, path: str, body: Any) -> None:
        """Allow-list check of a submitted coding system URI."""
        if not self.is_terminology_path(path) or not isinstance(body, dict):
            return
        system = body.get("system")
        if system is None:
            return
        if not isinstance(system, str) or not any(
            _under_authority(system, authority) for authority in self.settings.allowed_terminology_systems
        ):
            raise ComplianceViolation(
                "Only terminologies from approved national authorities are allowed",
                error_code="TERMINOLOGY_SYSTEM_NOT_ALLOWED",
                error="Terminology system not allowed",
                status_code=400,
            )
