"""
Pytest configuration and shared fixtures.

Contains common test fixtures and setup for all test modules.
"""

from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from src.healthgate.config import (
    AuditSettings,
    ComplianceSettings,
    DetectionSettings,
    RateLimitSettings,
    SecuritySettings,
    Settings,
)
from src.healthgate.core.audit import AuditLogger
from src.healthgate.core.auth import require_api_key
from src.healthgate.core.keystore import ApiKeyRecord, ApiKeyStore, InMemoryApiKeyStore
from src.healthgate.main import create_app


ADMIN_TOKEN = "test_admin_token_123456789abc"


class RecordingLogger:
    """Stand-in for the structlog audit sink that keeps every call."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    def bind(self, **kwargs: Any) -> "RecordingLogger":
        return self

    def debug(self, event: str, **kwargs: Any) -> None:
        self.events.append(("debug", event, kwargs))

    def info(self, event: str, **kwargs: Any) -> None:
        self.events.append(("info", event, kwargs))

    def warning(self, event: str, **kwargs: Any) -> None:
        self.events.append(("warning", event, kwargs))

    def error(self, event: str, **kwargs: Any) -> None:
        self.events.append(("error", event, kwargs))

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [kwargs for _, name, kwargs in self.events if name == event]

    @property
    def audit_records(self) -> List[Dict[str, Any]]:
        return self.named("audit")


@pytest.fixture
def test_api_keys() -> Dict[str, Dict[str, Any]]:
    """Seed keys for the in-memory store."""
    return {
        "test_key_valid_0123456789abcdef": {
            "application_name": "test-app",
            "status": "active",
            "cors_origins": ["https://partner.example.org"],
            "description": "Test application key",
        },
        "test_key_revoked_0123456789abcd": {
            "application_name": "retired-app",
            "status": "revoked",
            "description": "Revoked test key",
        },
        "test_key_legacy_0123456789abcde": {
            "name": "legacy-app",
            "active": True,
        },
    }


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    """Build Settings from per-section overrides."""

    def factory(
        security: Optional[Dict[str, Any]] = None,
        detection: Optional[Dict[str, Any]] = None,
        rate_limit: Optional[Dict[str, Any]] = None,
        compliance: Optional[Dict[str, Any]] = None,
        audit: Optional[Dict[str, Any]] = None,
    ) -> Settings:
        return Settings(
            log_level="DEBUG",
            security=SecuritySettings(**{"admin_token": ADMIN_TOKEN, "api_keys": {}, **(security or {})}),
            detection=DetectionSettings(**(detection or {})),
            rate_limit=RateLimitSettings(**(rate_limit or {})),
            compliance=ComplianceSettings(**(compliance or {})),
            audit=AuditSettings(**(audit or {})),
        )

    return factory


@pytest.fixture
def test_settings(settings_factory: Callable[..., Settings]) -> Settings:
    return settings_factory()


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def downstream_calls() -> List[str]:
    """Paths that reached a downstream handler."""
    return []


def add_demo_routes(app: FastAPI, calls: List[str]) -> None:
    """Downstream handlers standing in for the converter, patient and terminology services."""

    @app.post("/api/convert")
    async def convert(request: Request) -> Dict[str, Any]:
        calls.append(request.url.path)
        payload = await request.json()
        return {"converted": True, "received": payload}

    @app.get("/api/patient/{patient_id}")
    async def get_patient(patient_id: str) -> Dict[str, Any]:
        calls.append(f"/api/patient/{patient_id}")
        return {"id": patient_id}

    @app.post("/api/terminology/lookup")
    async def lookup(request: Request) -> Dict[str, Any]:
        calls.append(request.url.path)
        payload = await request.json()
        return {"system": payload.get("system"), "code": payload.get("code")}

    @app.post("/api/auth/login")
    async def login() -> Dict[str, Any]:
        calls.append("/api/auth/login")
        return {"ok": True}

    @app.post("/api/echo")
    async def echo(request: Request) -> Dict[str, Any]:
        calls.append(request.url.path)
        body = await request.body()
        return {"length": len(body)}

    @app.get("/api/search")
    async def search(q: str = "") -> Dict[str, Any]:
        calls.append("/api/search")
        return {"q": q}

    @app.get("/api/whoami")
    async def whoami(record: ApiKeyRecord = Depends(require_api_key)) -> Dict[str, Any]:
        calls.append("/api/whoami")
        return {
            "application": record.application_name,
            "usage_count": record.usage_count,
        }

    @app.get("/api/boom")
    async def boom() -> Dict[str, Any]:
        calls.append("/api/boom")
        raise RuntimeError("downstream exploded")

    @app.get("/api/patient/{patient_id}/history")
    async def patient_history(patient_id: str) -> Dict[str, Any]:
        calls.append(f"/api/patient/{patient_id}/history")
        raise RuntimeError(f"history store unavailable for {patient_id}")


@pytest.fixture
def app_factory(
    test_settings: Settings,
    test_api_keys: Dict[str, Dict[str, Any]],
    recording_logger: RecordingLogger,
    downstream_calls: List[str],
) -> Callable[..., FastAPI]:
    """Build a gated app with demo routes, a recording audit sink and seeded keys."""

    def factory(settings: Optional[Settings] = None, store: Optional[ApiKeyStore] = None) -> FastAPI:
        settings = settings or test_settings
        store = store or InMemoryApiKeyStore.from_config(test_api_keys)
        app = create_app(
            settings=settings,
            api_key_store=store,
            audit_logger=AuditLogger(settings.audit, logger=recording_logger),
        )
        add_demo_routes(app, downstream_calls)
        return app

    return factory


@pytest.fixture
def test_client(app_factory: Callable[..., FastAPI]) -> Generator[TestClient, None, None]:
    """FastAPI test client over the default test app."""
    with TestClient(app_factory()) as client:
        yield client


@pytest.fixture
def valid_convert_payload() -> Dict[str, Any]:
    """Clean HL7 conversion request."""
    return {
        "message": "MSH|^~\\&|LAB|HOSP|EHR|HOSP|20250922103000||ADT^A01|MSG00001|P|2.5\r"
                   "PID|1||123456^^^HOSP||Doe^John||19800101|M",
        "options": {"profile": "fr-core", "pretty": True},
        "tags": ["admission", "lab"],
    }
