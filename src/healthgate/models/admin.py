"""
Admin API data models.

Contains Pydantic models for API key issuance and revocation.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ApiKeyIssueRequest(BaseModel):
    """Request model for API key issuance."""

    application_name: str = Field(
        ...,
        description="Owning application (alphanumeric, spaces, hyphens, underscores)",
        pattern=r"^[a-zA-Z0-9 _-]+$",
        min_length=3,
        max_length=50
    )
    description: str = Field(
        default="",
        description="Human-readable description of the key",
        max_length=200
    )
    cors_origins: List[str] = Field(
        default_factory=list,
        description="Origins allowed for this application in production"
    )


class ApiKeyIssueResponse(BaseModel):
    """Response model for API key issuance. The raw key is shown only here."""

    key_id: str = Field(..., description="Identifier of the stored key")
    api_key: str = Field(..., description="Raw API key, never stored")
    application_id: str = Field(..., description="Owning application id")
    application_name: str = Field(..., description="Owning application name")
    message: str = Field(..., description="Success message")


class ApiKeyStatusResponse(BaseModel):
    """Response model for key status changes."""

    key_id: str = Field(..., description="Identifier of the stored key")
    status: str = Field(..., description="New key status")
    usage_count: int = Field(..., description="Metered usage so far")
    last_used_at: Optional[datetime] = Field(default=None, description="Last authenticated use")
