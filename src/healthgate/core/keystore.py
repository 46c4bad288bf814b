"""
API key storage.

Raw API keys are never stored or compared: callers hash them with SHA-256
and every lookup goes through the digest. Marking a key as used is a single
atomic operation per store (a locked map update in memory, one UPDATE
statement in SQL), so concurrent hits on the same key are never lost.
"""

import asyncio
import hashlib
import json
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .exceptions import AuthLookupFailure

logger = structlog.get_logger(__name__)

STATUS_ACTIVE = "active"
STATUS_REVOKED = "revoked"


def hash_api_key(raw_key: str) -> str:
    """Hash a raw API key; returns the hex digest used for storage and lookup."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key() -> Tuple[str, str]:
    """
    Generate a new API key.

    Returns:
        (raw_key, hashed_key): raw_key is shown once, hashed_key is stored.
    """
    raw_key = secrets.token_hex(32)
    return raw_key, hash_api_key(raw_key)


@dataclass(frozen=True)
class ApiKeyRecord:
    """Snapshot of a stored key joined with its owning application."""

    id: str
    hashed_key: str
    application_id: str
    application_name: str
    status: str = STATUS_ACTIVE
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    cors_origins: List[str] = field(default_factory=list)
    description: str = ""

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


class ApiKeyStore(ABC):
    """Contract shared by every key store."""

    @abstractmethod
    async def touch_active(self, hashed_key: str) -> Optional[ApiKeyRecord]:
        """
        Atomically meter one use of an active key.

        Increments usage_count and bumps last_used_at for the active record
        matching hashed_key, then returns the updated snapshot. Returns None
        when no active record matches. Raises AuthLookupFailure when the
        store itself fails.
        """

    @abstractmethod
    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        """Return a record by id regardless of status."""

    @abstractmethod
    async def add(
        self,
        hashed_key: str,
        application_name: str,
        application_id: Optional[str] = None,
        cors_origins: Optional[List[str]] = None,
        description: str = "",
        status: str = STATUS_ACTIVE,
    ) -> ApiKeyRecord:
        """Store a new hashed key."""

    @abstractmethod
    async def set_status(self, key_id: str, status: str) -> Optional[ApiKeyRecord]:
        """Change a key status; returns None for unknown ids."""

    async def start(self) -> None:
        """Prepare backing resources."""

    async def close(self) -> None:
        """Release backing resources."""


class InMemoryApiKeyStore(ApiKeyStore):
    """Process-local store guarded by a single lock."""

    def __init__(self) -> None:
        self._records: Dict[str, ApiKeyRecord] = {}
        self._ids_by_hash: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, api_keys: Dict[str, Dict[str, Any]]) -> "InMemoryApiKeyStore":
        """
        Seed a store from configured raw keys.

        Each entry maps a raw key to metadata: application_name,
        application_id, status (or legacy active flag), cors_origins,
        description. Keys are hashed before they are kept.
        """
        store = cls()
        for raw_key, info in api_keys.items():
            status = info.get("status")
            if status is None:
                status = STATUS_ACTIVE if info.get("active", True) else STATUS_REVOKED
            record = ApiKeyRecord(
                id=str(info.get("id") or uuid.uuid4()),
                hashed_key=hash_api_key(raw_key),
                application_id=str(info.get("application_id") or info.get("application_name", "default")),
                application_name=info.get("application_name", info.get("name", "default")),
                status=status,
                cors_origins=list(info.get("cors_origins", [])),
                description=info.get("description", ""),
            )
            store._records[record.id] = record
            store._ids_by_hash[record.hashed_key] = record.id
        logger.info("In-memory API key store seeded", keys=len(store._records))
        return store

    async def touch_active(self, hashed_key: str) -> Optional[ApiKeyRecord]:
        async with self._lock:
            key_id = self._ids_by_hash.get(hashed_key)
            record = self._records.get(key_id) if key_id else None
            if record is None or not record.is_active:
                return None
            record = replace(
                record,
                usage_count=record.usage_count + 1,
                last_used_at=datetime.now(timezone.utc),
            )
            self._records[record.id] = record
            return record

    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        return self._records.get(key_id)

    async def add(
        self,
        hashed_key: str,
        application_name: str,
        application_id: Optional[str] = None,
        cors_origins: Optional[List[str]] = None,
        description: str = "",
        status: str = STATUS_ACTIVE,
    ) -> ApiKeyRecord:
        record = ApiKeyRecord(
            id=str(uuid.uuid4()),
            hashed_key=hashed_key,
            application_id=application_id or str(uuid.uuid4()),
            application_name=application_name,
            status=status,
            cors_origins=list(cors_origins or []),
            description=description,
        )
        async with self._lock:
            self._records[record.id] = record
            self._ids_by_hash[hashed_key] = record.id
        return record

    async def set_status(self, key_id: str, status: str) -> Optional[ApiKeyRecord]:
        async with self._lock:
            record = self._records.get(key_id)
            if record is None:
                return None
            record = replace(record, status=status)
            self._records[key_id] = record
            return record


# ── SQL store ───────────────────────────────────────────────


class Base(DeclarativeBase):
    """Declarative base for the key store tables."""


class ApplicationRow(Base):
    """Application owning one or more API keys."""

    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    cors_origins: Mapped[str] = mapped_column(Text, nullable=False, default="[]")


class ApiKeyRow(Base):
    """Hashed API key belonging to an application."""

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    application_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    hashed_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_ACTIVE)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")


def _to_record(key: ApiKeyRow, application: ApplicationRow) -> ApiKeyRecord:
    try:
        origins = json.loads(application.cors_origins or "[]")
    except json.JSONDecodeError:
        logger.warning("Unparseable application origins", application_id=application.id)
        origins = []
    return ApiKeyRecord(
        id=key.id,
        hashed_key=key.hashed_key,
        application_id=application.id,
        application_name=application.name,
        status=key.status,
        usage_count=key.usage_count,
        last_used_at=key.last_used_at,
        cors_origins=origins if isinstance(origins, list) else [],
        description=key.description,
    )


class SqlAlchemyApiKeyStore(ApiKeyStore):
    """
    Persistent store on SQLAlchemy asyncio.

    The usage bump is pushed to the database as
    UPDATE api_keys SET usage_count = usage_count + 1 ... WHERE status = 'active',
    never read-modify-write in Python.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.engine = create_async_engine(database_url, echo=echo)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def start(self) -> None:
        """Create tables when missing."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("SQL API key store ready", url=self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        await self.engine.dispose()

    async def _fetch(self, session: AsyncSession, *criteria: Any) -> Optional[ApiKeyRecord]:
        stmt = (
            select(ApiKeyRow, ApplicationRow)
            .join(ApplicationRow, ApiKeyRow.application_id == ApplicationRow.id)
            .where(*criteria)
        )
        row = (await session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return _to_record(row[0], row[1])

    async def touch_active(self, hashed_key: str) -> Optional[ApiKeyRecord]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    stmt = (
                        update(ApiKeyRow)
                        .where(
                            ApiKeyRow.hashed_key == hashed_key,
                            ApiKeyRow.status == STATUS_ACTIVE,
                        )
                        .values(
                            usage_count=ApiKeyRow.usage_count + 1,
                            last_used_at=datetime.now(timezone.utc),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    result = await session.execute(stmt)
                    if result.rowcount == 0:
                        return None
                    return await self._fetch(session, ApiKeyRow.hashed_key == hashed_key)
        except Exception as e:
            raise AuthLookupFailure(f"API key lookup failed: {type(e).__name__}") from e

    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        async with self.session_factory() as session:
            return await self._fetch(session, ApiKeyRow.id == key_id)

    async def add(
        self,
        hashed_key: str,
        application_name: str,
        application_id: Optional[str] = None,
        cors_origins: Optional[List[str]] = None,
        description: str = "",
        status: str = STATUS_ACTIVE,
    ) -> ApiKeyRecord:
        async with self.session_factory() as session:
            async with session.begin():
                application = None
                if application_id is not None:
                    application = await session.get(ApplicationRow, application_id)
                if application is None:
                    application = ApplicationRow(
                        id=application_id or str(uuid.uuid4()),
                        name=application_name,
                        cors_origins=json.dumps(list(cors_origins or [])),
                    )
                    session.add(application)
                key = ApiKeyRow(
                    id=str(uuid.uuid4()),
                    application_id=application.id,
                    hashed_key=hashed_key,
                    status=status,
                    usage_count=0,
                    description=description,
                )
                session.add(key)
            return _to_record(key, application)

    async def set_status(self, key_id: str, status: str) -> Optional[ApiKeyRecord]:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(ApiKeyRow).where(ApiKeyRow.id == key_id).values(status=status)
                )
                if result.rowcount == 0:
                    return None
                return await self._fetch(session, ApiKeyRow.id == key_id)


def build_api_key_store(database_url: Optional[str], api_keys: Dict[str, Dict[str, Any]]) -> ApiKeyStore:
    """Pick the SQL store when a database is configured, memory otherwise."""
    if database_url:
        return SqlAlchemyApiKeyStore(database_url)
    return InMemoryApiKeyStore.from_config(api_keys)
