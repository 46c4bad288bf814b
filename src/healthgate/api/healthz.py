"""
Health check endpoint.

- /api/system/health: Liveness probe (always 200 if service alive)
"""

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Request

from ..models import HealthResponse

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/api/system/health",
    response_model=HealthResponse,
    status_code=200,
    summary="Liveness probe",
    description="""
    Liveness probe endpoint.

    Always returns 200 OK if the service is running. Exempt from rate
    limiting so load balancers and orchestrators can poll it freely.
    """,
)
async def liveness_check(request: Request) -> HealthResponse:
    """
    Liveness probe - always returns 200 if service is alive.
    """
    return HealthResponse(
        status="alive",
        service="healthgate",
        version=request.app.version,
        timestamp=datetime.now(timezone.utc),
    )
