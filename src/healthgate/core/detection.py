"""
Heuristic threat detection over request surfaces.

Walks query parameters, path parameters and the parsed body as an object
graph and tests every string leaf against ordered pattern families:
SQL injection, XSS, path traversal. Each family runs over all surfaces
before the next one starts, so a payload hitting several families reports
the earliest family. First match wins; the request is rejected, never
sanitized.

This is a fast first line of defense, not a substitute for parameterized
data access in downstream handlers. Detection is block-list based and
therefore incomplete.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Pattern, Tuple

import structlog

from ..config import DetectionSettings
from .exceptions import ThreatDetected, ValidationRejection
from .masking import truncate

logger = structlog.get_logger(__name__)


class ThreatCategory(str, Enum):
    """Detection families."""

    SQL_INJECTION = "sql_injection"
    XSS = "xss"
    PATH_TRAVERSAL = "path_traversal"
    HEADER = "header"
    BODY_SIZE = "body_size"
    INTRUSION = "intrusion"


REJECTION_CODES = {
    ThreatCategory.SQL_INJECTION: "SQL_INJECTION_DETECTED",
    ThreatCategory.XSS: "XSS_DETECTED",
    ThreatCategory.PATH_TRAVERSAL: "PATH_TRAVERSAL_DETECTED",
    ThreatCategory.INTRUSION: "INTRUSION_DETECTED",
}


@dataclass(frozen=True)
class ThreatPattern:
    """A named regular expression within a family."""

    category: ThreatCategory
    name: str
    regex: Pattern[str]


def _patterns(category: ThreatCategory, *specs: Tuple[str, str, int]) -> Tuple[ThreatPattern, ...]:
    return tuple(ThreatPattern(category, name, re.compile(expr, flags)) for name, expr, flags in specs)


SQL_INJECTION_PATTERNS = _patterns(
    ThreatCategory.SQL_INJECTION,
    ("select_from", r"\bSELECT\b[\s\S]+?\bFROM\b", re.I),
    ("insert_into", r"\bINSERT\s+INTO\b", re.I),
    ("update_set", r"\bUPDATE\b\s+\w+\s+\bSET\b", re.I),
    ("delete_from", r"\bDELETE\s+FROM\b", re.I),
    ("ddl_statement", r"\b(?:DROP|CREATE|ALTER|TRUNCATE)\s+(?:TABLE|DATABASE|SCHEMA|INDEX|VIEW)\b", re.I),
    ("exec_procedure", r"\bEXEC(?:UTE)?\b\s*\(?\s*(?:XP_|SP_)\w*", re.I),
    ("numeric_tautology", r"\b(?:OR|AND)\s+\d+\s*=\s*\d+", re.I),
    ("quoted_tautology", r"['\"]\s*(?:OR|AND)\s+['\"][^'\"]*['\"]\s*=\s*['\"]", re.I),
    ("comment_or_terminator", r"--|/\*|\*/|;", 0),
    ("union_select", r"\bUNION\b[\s\S]*\bSELECT\b", re.I),
)

XSS_PATTERNS = _patterns(
    ThreatCategory.XSS,
    ("script_block", r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.I),
    ("iframe_block", r"<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>", re.I),
    ("javascript_uri", r"javascript\s*:", re.I),
    ("event_handler", r"\bon\w+\s*=", re.I),
    ("dangerous_tag", r"<\s*/?\s*(?:script|iframe|object|embed|form|meta|link)\b[^>]*>", re.I),
)

PATH_TRAVERSAL_PATTERNS = _patterns(
    ThreatCategory.PATH_TRAVERSAL,
    ("dot_dot_slash", r"\.\.[\\/]", 0),
    ("slash_dot_dot", r"[\\/]\.\.(?:[\\/]|$)", 0),
    ("encoded_dot_dot", r"%(?:25)?2e%(?:25)?2e(?:%(?:25)?2f|%(?:25)?5c|[\\/])", re.I),
    ("mixed_encoding", r"\.\.%(?:25)?(?:2f|5c)", re.I),
)

INTRUSION_PATTERNS = _patterns(
    ThreatCategory.INTRUSION,
    ("sql_quote_or_keyword", r"'|--|\b(?:union|select|insert|delete|update|drop|create|alter|exec|execute)\s", re.I),
    ("script_tag", r"<script[^>]*>.*?</script>", re.I | re.S),
    ("path_traversal", r"\.\.[\\/]", 0),
    ("command_injection", r"[;&|`$]", 0),
)

PAYLOAD_FAMILIES = (SQL_INJECTION_PATTERNS, XSS_PATTERNS, PATH_TRAVERSAL_PATTERNS)
PAYLOAD_PATTERNS = SQL_INJECTION_PATTERNS + XSS_PATTERNS + PATH_TRAVERSAL_PATTERNS

SUSPICIOUS_ACCESS = re.compile(r"admin|password|token|key|secret|config|\.env|backup|database", re.I)

_HEADER_CONTROL_CHARS = re.compile(r"[\r\n\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass(frozen=True)
class ThreatMatch:
    """Where and what matched."""

    category: ThreatCategory
    pattern: str
    path: str
    value: str


@dataclass(frozen=True)
class DetectionEvent:
    """Forensic record of a rejected request."""

    timestamp: str
    source: str
    path: str
    category: str
    pattern: str
    field: str
    value: str

    @classmethod
    def from_match(cls, match: ThreatMatch, source: str, request_path: str) -> "DetectionEvent":
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            source=source,
            path=request_path,
            category=match.category.value,
            pattern=match.pattern,
            field=match.path,
            value=match.value,
        )

    def as_log(self) -> Dict[str, str]:
        return {
            "timestamp": self.timestamp,
            "source": self.source,
            "path": self.path,
            "category": self.category,
            "pattern": self.pattern,
            "field": self.field,
            "value": self.value,
        }


class ThreatDetector:
    """
    Stateless scanner. All methods are pure given the settings.
    """

    def __init__(self, settings: DetectionSettings) -> None:
        self.settings = settings

    def scan_value(
        self,
        value: Any,
        path: str = "",
        depth: int = 0,
        patterns: Tuple[ThreatPattern, ...] = PAYLOAD_PATTERNS,
    ) -> Optional[ThreatMatch]:
        """
        Recursively walk value and return the first matching leaf.

        Dict keys and list indexes extend the dotted path. Non-string leaves
        are skipped. Raises ValidationRejection when nesting exceeds max_depth.
        """
        if value is None:
            return None

        if depth > self.settings.max_depth:
            raise ValidationRejection(
                "Payload nesting exceeds the allowed depth",
                error_code="PAYLOAD_TOO_DEEP",
                details={"path": path, "max_depth": self.settings.max_depth},
            )

        if isinstance(value, str):
            for pattern in patterns:
                if pattern.regex.search(value):
                    return ThreatMatch(
                        category=pattern.category,
                        pattern=pattern.name,
                        path=path,
                        value=truncate(value, self.settings.log_value_chars),
                    )
            return None

        if isinstance(value, dict):
            for key, item in value.items():
                found = self.scan_value(item, f"{path}.{key}", depth + 1, patterns)
                if found:
                    return found
            return None

        if isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                found = self.scan_value(item, f"{path}.{index}", depth + 1, patterns)
                if found:
                    return found

        return None

    def scan_surfaces(self, surfaces: Dict[str, Any]) -> Optional[ThreatMatch]:
        """
        Scan named surfaces (query, params, body) one family at a time.

        Every surface is checked for SQL injection before any is checked for
        XSS, then path traversal. Within a family, surfaces are scanned in order.
        """
        for family in PAYLOAD_FAMILIES:
            for name, surface in surfaces.items():
                found = self.scan_value(surface, name, patterns=family)
                if found:
                    return found
        return None

    def scan_raw_target(self, raw_path: str, query_string: str) -> Optional[ThreatMatch]:
        """Traversal check on the undecoded request target."""
        for name, target in (("url.path", raw_path), ("url.query", query_string)):
            if not target:
                continue
            for pattern in PATH_TRAVERSAL_PATTERNS:
                if pattern.regex.search(target):
                    return ThreatMatch(
                        category=pattern.category,
                        pattern=pattern.name,
                        path=name,
                        value=truncate(target, self.settings.log_value_chars),
                    )
        return None

    def scan_intrusion(
        self,
        path: str,
        body: Any,
        user_agent: Optional[str],
        query: Any = None,
    ) -> Optional[ThreatMatch]:
        """
        Dedicated intrusion variant over the request URL, body and user-agent.

        Decoded query parameters are serialized like the body, so the `&`
        separating them is never mistaken for a shell metacharacter.
        """
        texts = (
            ("url.path", path),
            ("url.query", json.dumps(query, ensure_ascii=False) if query else ""),
            ("body", json.dumps(body, ensure_ascii=False) if body is not None else ""),
            ("headers.user-agent", user_agent or ""),
        )
        for name, text in texts:
            for pattern in INTRUSION_PATTERNS:
                if pattern.regex.search(text):
                    return ThreatMatch(
                        category=pattern.category,
                        pattern=pattern.name,
                        path=name,
                        value=truncate(text, self.settings.log_value_chars),
                    )
        return None

    def check_headers(self, headers: Iterable[Tuple[str, str]]) -> None:
        """Reject oversized header values and values carrying control characters."""
        for name, value in headers:
            if len(value) > self.settings.max_header_length:
                raise ValidationRejection(
                    "Header size exceeded",
                    error_code="INVALID_HEADER",
                    error="Invalid header",
                    details={"header": name},
                )
            if _HEADER_CONTROL_CHARS.search(value):
                raise ValidationRejection(
                    "Characters not allowed in headers",
                    error_code="INVALID_HEADER",
                    error="Invalid header",
                    details={"header": name},
                )

    def check_body_size(self, content_length: Optional[str]) -> None:
        """Reject a declared body above the configured ceiling."""
        if content_length is None:
            return
        try:
            declared = int(content_length.strip())
        except ValueError:
            raise ValidationRejection(
                "Content-Length is not a valid integer",
                error_code="INVALID_CONTENT_LENGTH",
            )
        if declared > self.settings.max_body_bytes:
            raise ValidationRejection(
                "Request size exceeded",
                error_code="PAYLOAD_TOO_LARGE",
                error="Payload too large",
                status_code=413,
                details={"content_length": declared},
            )

    def is_suspicious_access(self, url: str) -> bool:
        """True for URLs naming sensitive resources. Never blocks."""
        return bool(SUSPICIOUS_ACCESS.search(url))

    @staticmethod
    def rejection_for(match: ThreatMatch) -> ThreatDetected:
        status_code = 403 if match.category is ThreatCategory.INTRUSION else 400
        message = (
            "Access denied for security reasons"
            if status_code == 403
            else "Suspicious content detected in the request"
        )
        return ThreatDetected(
            category=match.category.value,
            error_code=REJECTION_CODES[match.category],
            message=message,
            status_code=status_code,
        )
