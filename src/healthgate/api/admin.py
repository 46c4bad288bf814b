"""
Admin API endpoints for HealthGate.

Provides API key issuance and revocation. Only the SHA-256 digest of an
issued key is stored; the raw key is returned once.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..core.auth import authenticate_admin_token, key_prefix
from ..core.keystore import STATUS_REVOKED, ApiKeyStore, generate_api_key
from ..models import ApiKeyIssueRequest, ApiKeyIssueResponse, ApiKeyStatusResponse

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_api_key_store(request: Request) -> ApiKeyStore:
    return request.app.state.api_key_store


@router.post(
    "/api/admin/api-keys",
    response_model=ApiKeyIssueResponse,
    status_code=201,
    responses={
        401: {"description": "Unauthorized - admin token required"},
        500: {"description": "Internal server error"},
    },
    summary="Issue an API key for an application",
    description="""
    Issue a new API key for an application.

    **Admin Operation:**
    - Requires admin token authentication
    - Generates a random 64 hex character key
    - Stores only the SHA-256 digest of the key
    - The raw key is returned in this response only
    """,
)
async def issue_api_key(
    request_data: ApiKeyIssueRequest,
    admin_token: str = Depends(authenticate_admin_token),
    store: ApiKeyStore = Depends(get_api_key_store),
) -> ApiKeyIssueResponse:
    """Generate, store and return a new API key."""
    logger.info(
        "API key issuance requested",
        application_name=request_data.application_name,
        admin_token=key_prefix(admin_token),
    )

    try:
        raw_key, hashed_key = generate_api_key()
        record = await store.add(
            hashed_key,
            application_name=request_data.application_name,
            cors_origins=request_data.cors_origins,
            description=request_data.description,
        )
    except Exception as e:
        logger.error(
            "API key issuance failed",
            application_name=request_data.application_name,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="API key issuance failed",
        )

    logger.info(
        "API key issued",
        key_id=record.id,
        application_name=record.application_name,
        key=key_prefix(raw_key),
    )

    return ApiKeyIssueResponse(
        key_id=record.id,
        api_key=raw_key,
        application_id=record.application_id,
        application_name=record.application_name,
        message="API key issued. Store it now: it cannot be retrieved again.",
    )


@router.post(
    "/api/admin/api-keys/{key_id}/revoke",
    response_model=ApiKeyStatusResponse,
    responses={
        401: {"description": "Unauthorized - admin token required"},
        404: {"description": "Unknown API key"},
    },
    summary="Revoke an API key",
)
async def revoke_api_key(
    key_id: str,
    admin_token: str = Depends(authenticate_admin_token),
    store: ApiKeyStore = Depends(get_api_key_store),
) -> ApiKeyStatusResponse:
    """
    Revoke a key. Revoked keys authenticate as unknown from the next request on.
    """
    record = await store.set_status(key_id, STATUS_REVOKED)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"API key '{key_id}' not found",
        )

    logger.info("API key revoked", key_id=key_id, admin_token=key_prefix(admin_token))

    return ApiKeyStatusResponse(
        key_id=record.id,
        status=record.status,
        usage_count=record.usage_count,
        last_used_at=record.last_used_at,
    )
