"""
API endpoints package.

Contains FastAPI routers for the service endpoints:
- /api/system/health - Liveness check, never rate limited
- /metrics - Prometheus metrics
- /api/admin/api-keys - API key issuance and revocation
"""
from .admin import router as admin_router
from .healthz import router as healthz_router
from .metrics import router as metrics_router

__all__ = ["admin_router", "healthz_router", "metrics_router"]
