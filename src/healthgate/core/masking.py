"""
Privacy masking helpers for audit and log output.

- IP anonymization: IPv4 drops the last octet, IPv6 keeps four groups
- Session hash: daily-rotating one-way digest of ip + user-agent + date
- Log sanitization: redacts patient-identifying tokens in free text

All functions are pure; none of them raise on bad input.
"""

import hashlib
import ipaddress
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

UNKNOWN_IP = "unknown"
ANONYMIZED_IP = "anonymized"
IPV6_SUFFIX = "::xxxx"

# Order matters: names first, then the numeric forms from most to least specific
_SANITIZE_RULES = (
    (re.compile(r"\b[A-Z][a-z]+\^[A-Z][a-z]+"), "[PATIENT_NAME]"),
    (re.compile(r"\b(?:19|20)\d{6}\b"), "[DATE_BIRTH]"),
    (re.compile(r"\b[12]\d{12}\b"), "[SSN]"),
    (re.compile(r"\b\d{8,}\b"), "[PATIENT_ID]"),
)
_IPV4_TOKEN = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")


def anonymize_ip(ip: Optional[str]) -> str:
    """
    Irreversibly reduce an address to a network prefix.

    Examples:
        203.0.113.7 -> 203.0.113.xxx
        2001:db8:85a3:8d3:1319:8a2e:370:7348 -> 2001:db8:85a3:8d3::xxxx
        None / "" -> unknown; anything unparseable -> anonymized
    """
    if not ip or not isinstance(ip, str):
        return UNKNOWN_IP

    candidate = ip.strip()
    if "%" in candidate:
        # Drop IPv6 zone ids
        candidate = candidate.split("%", 1)[0]

    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return ANONYMIZED_IP

    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return anonymize_ip(str(address.ipv4_mapped))
        groups = address.exploded.split(":")[:4]
        return ":".join(format(int(group, 16), "x") for group in groups) + IPV6_SUFFIX

    octets = str(address).split(".")
    return f"{octets[0]}.{octets[1]}.{octets[2]}.xxx"


def session_hash(
    ip: Optional[str],
    user_agent: Optional[str],
    day: Optional[date] = None,
    length: int = 16,
) -> str:
    """
    Daily-rotating pseudonymous session id.

    Deterministic for the same (ip, user-agent) within one calendar day
    (UTC), unlinkable across days.
    """
    day = day or datetime.now(timezone.utc).date()
    data = "|".join([ip or "", user_agent or "", day.isoformat()])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:length]


def sanitize_log_data(text: str) -> str:
    """Redact patient names, birth dates, social-insurance numbers, long ids and raw IPv4s."""
    for pattern, replacement in _SANITIZE_RULES:
        text = pattern.sub(replacement, text)
    return _IPV4_TOKEN.sub(lambda match: anonymize_ip(match.group(0)), text)


def sanitize_value(value: Any) -> Any:
    """Apply sanitize_log_data to every string inside a nested structure."""
    if isinstance(value, str):
        return sanitize_log_data(value)
    if isinstance(value, dict):
        return {key: sanitize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_value(item) for item in value]
    return value


def truncate(value: str, limit: int = 100) -> str:
    """Keep a bounded prefix of an offending value for forensics."""
    if len(value) <= limit:
        return value
    return value[:limit] + "..."
