from __future__ import annotations

import asyncio
import datetime as dt
import hashlib
import sys
import uuid
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Add backend folder to sys.path so `import itemize...` works in tests when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from itemize.core.database import Base  # noqa: E402
from itemize.models.enums import PlanType, ReceiptStatus  # noqa: E402
from itemize.models.tables import AuditEvent, Receipt, ReceiptItem, Tenant  # noqa: E402
from itemize.services.audit_service import AuditLogService  # noqa: E402
from itemize.services.storage_service import StorageError  # noqa: E402

NOW = dt.datetime(2024, 6, 15, 12, 0, 0)


class FrozenClock:
    def __init__(self, now: dt.datetime = NOW) -> None:
        self.current = now

    def now(self) -> dt.datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += dt.timedelta(**kwargs)


class RecordingHandoff:
    """Accepts every payload unless told to fail for a record (or all)."""

    def __init__(self) -> None:
        self.submitted = []
        self.fail_for: set[int] = set()
        self.error: Exception | None = None

    async def submit(self, payload) -> None:
        self.submitted.append(payload)
        if self.error is not None:
            raise self.error
        if payload.record_id in self.fail_for:
            raise ConnectionError("extraction worker unreachable")


class MemoryStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_put = False
        self.fail_delete = False

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        if self.fail_put:
            raise StorageError("bucket unavailable")
        self.objects[key] = data

    async def delete(self, key: str) -> None:
        if self.fail_delete:
            raise StorageError("bucket unavailable")
        self.deleted.append(key)
        self.objects.pop(key, None)

    async def load(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError as exc:
            raise StorageError(f"File not found: {key}") from exc

    async def signed_url(self, key: str, expires_in=None) -> str:
        return f"https://files.test/{key}?sig=abc"


class Db:
    """Seeding and inspection helpers over a session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def add_tenant(self, name="Acme Renovations", plan=PlanType.FREE, uploads_per_month=None) -> int:
        async with self.session_factory() as session:
            tenant = Tenant(name=name, plan=plan, uploads_per_month=uploads_per_month)
            session.add(tenant)
            await session.commit()
            return tenant.id

    async def add_receipt(self, tenant_id: int, **fields) -> Receipt:
        token = uuid.uuid4().hex
        values = dict(
            tenant_id=tenant_id,
            owner_id="user-1",
            content_fingerprint=hashlib.sha256(token.encode()).hexdigest(),
            storage_key=f"receipts/{tenant_id}/2024-06/{token}.png",
            content_type="image/png",
            status=ReceiptStatus.PENDING,
            created_at=NOW,
            updated_at=NOW,
        )
        values.update(fields)
        async with self.session_factory() as session:
            receipt = Receipt(**values)
            session.add(receipt)
            await session.commit()
            await session.refresh(receipt)
            return receipt

    async def add_item(self, tenant_id: int, receipt_id: int, name: str, **fields) -> ReceiptItem:
        async with self.session_factory() as session:
            item = ReceiptItem(tenant_id=tenant_id, receipt_id=receipt_id, name=name, **fields)
            session.add(item)
            await session.commit()
            await session.refresh(item)
            return item

    async def get(self, model, pk):
        async with self.session_factory() as session:
            return await session.get(model, pk)

    async def count(self, model, **filters) -> int:
        q = select(func.count()).select_from(model)
        for name, value in filters.items():
            q = q.where(getattr(model, name) == value)
        async with self.session_factory() as session:
            return int((await session.execute(q)).scalar() or 0)

    async def audit_events(self, event_type: str | None = None) -> list[AuditEvent]:
        q = select(AuditEvent).order_by(AuditEvent.id)
        if event_type is not None:
            q = q.where(AuditEvent.event_type == event_type)
        async with self.session_factory() as session:
            return list((await session.execute(q)).scalars().all())


def _make_factory(db_path: Path):
    # NullPool so connections never outlive the event loop that opened them.
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def _create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine, factory = _make_factory(tmp_path / "test.db")
    await _create_schema(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
def sync_session_factory(tmp_path):
    """Same as ``session_factory`` for synchronous (TestClient) tests."""
    engine, factory = _make_factory(tmp_path / "api.db")
    asyncio.run(_create_schema(engine))
    yield factory
    asyncio.run(engine.dispose())


@pytest.fixture
def db(session_factory) -> Db:
    return Db(session_factory)


@pytest.fixture
def api_db(sync_session_factory) -> Db:
    return Db(sync_session_factory)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def handoff() -> RecordingHandoff:
    return RecordingHandoff()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def audit(session_factory) -> AuditLogService:
    return AuditLogService(session_factory)


class ApiHarness:
    def __init__(self, client, db, storage, handoff, clock, limiter) -> None:
        self.client = client
        self.db = db
        self.storage = storage
        self.handoff = handoff
        self.clock = clock
        self.limiter = limiter

    def run(self, coro):
        return asyncio.run(coro)

    def headers(self, tenant_id: int, actor_id: str = "user-1") -> dict[str, str]:
        from itemize.core.security import create_access_token

        return {"Authorization": f"Bearer {create_access_token(tenant_id, actor_id)}"}


@pytest.fixture
def api(api_db, sync_session_factory, storage, handoff, clock):
    """The real app with its infrastructure dependencies swapped for test doubles."""
    from fastapi.testclient import TestClient

    from itemize.api import dependencies as deps
    from itemize.api.main import app
    from itemize.services.rate_limiter import InMemoryRateLimiter

    limiter = InMemoryRateLimiter(clock)

    async def _db_session():
        async with sync_session_factory() as session:
            yield session

    app.dependency_overrides.update(
        {
            deps.get_session_factory: lambda: sync_session_factory,
            deps.get_db_session: _db_session,
            deps.get_storage: lambda: storage,
            deps.get_extraction_handoff: lambda: handoff,
            deps.get_clock: lambda: clock,
            deps.get_rate_limiter: lambda: limiter,
            deps.get_warranty_client: lambda: None,
        }
    )
    try:
        yield ApiHarness(TestClient(app), api_db, storage, handoff, clock, limiter)
    finally:
        app.dependency_overrides.clear()
