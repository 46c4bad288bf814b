"""
Response body models.

- Rejections: {success: false, error, message, code[, retryAfter]}
- Health: service liveness payload
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class RejectionResponse(BaseModel):
    """Structured body returned whenever the gate stops a request."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(default=False, description="Always false for rejections")
    error: str = Field(description="Short human-readable error title")
    message: str = Field(description="Human-readable explanation")
    code: Optional[str] = Field(default=None, description="Machine-readable rejection code")
    retry_after: Optional[int] = Field(
        default=None,
        alias="retryAfter",
        description="Seconds until the rate-limit window resets"
    )

    def to_body(self) -> Dict[str, Any]:
        """Serialize with wire field names, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


class HealthResponse(BaseModel):
    """Liveness payload for the system health route."""

    status: str = Field(description="Service status")
    service: str = Field(description="Service name")
    version: str = Field(description="Service version")
    timestamp: datetime = Field(description="Time of the check")
