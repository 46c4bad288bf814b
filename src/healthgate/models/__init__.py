"""
Pydantic data models package.

Contains the data validation models for:
- Rejection and health responses
- Admin API key management
"""

from .admin import ApiKeyIssueRequest, ApiKeyIssueResponse, ApiKeyStatusResponse
from .responses import HealthResponse, RejectionResponse

__all__ = [
    # Response models
    "RejectionResponse",
    "HealthResponse",

    # Admin models
    "ApiKeyIssueRequest",
    "ApiKeyIssueResponse",
    "ApiKeyStatusResponse",
]
