"""Pytest configuration and fixtures."""

import threading

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import JSON, Uuid, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import get_session
from app.main import app
from app.models import Base
from app.services.change_control import stats
from app.services.change_control.errors import ExternalMutationFailed
from app.services.change_control.platform import get_store_platform
from app.services.change_control.store import ChangeRecordStore
from app.services.events import bus


# in-memory SQLite shared by every thread (TestClient runs sync endpoints in a worker thread)
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)

TestSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    expire_on_commit=False,
)


def _patch_postgres_types(base):
    """
    Swap PostgreSQL-only column types for portable ones so the schema
    compiles on SQLite. Test use only.
    """
    from sqlalchemy.dialects.postgresql import JSONB, UUID

    for table in base.metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, UUID):
                column.type = Uuid(as_uuid=True)


_patch_postgres_types(Base)


class FakeStorePlatform:
    """
    Records every content write. Entity ids in `fail_for` are rejected the
    way Shopify rejects an invalid update.
    """

    def __init__(self):
        self.calls: list[tuple] = []
        self.fail_for: set = set()
        self.error: Exception | None = None
        self._lock = threading.Lock()

    def apply_content(self, entity_id, action_type, content):
        with self._lock:
            self.calls.append((entity_id, action_type, dict(content)))
        if self.error is not None:
            raise self.error
        if entity_id in self.fail_for:
            raise ExternalMutationFailed(
                "Shopify rejected PUT: Validation failed",
                status_code=422,
                entity_id=entity_id,
            )
        return {"entity_id": entity_id, "calls": [{"method": "PUT", "status": 200}]}


@pytest.fixture(autouse=True)
def reset_shared_state():
    bus.clear()
    stats.invalidate_counts()
    yield
    bus.clear()
    stats.invalidate_counts()


@pytest.fixture(scope="function")
def test_session() -> Session:
    """
    Database session for one test, on a fresh in-memory schema.
    """
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(test_session: Session):
    """Alias of test_session."""
    yield test_session


@pytest.fixture
def platform() -> FakeStorePlatform:
    return FakeStorePlatform()


@pytest.fixture
def store(db_session: Session) -> ChangeRecordStore:
    return ChangeRecordStore(db_session)


@pytest.fixture
def make_record(store: ChangeRecordStore):
    """Factory creating a change record and returning its id."""

    def _make(merchant_id: str = "shop-1", **overrides):
        data = {
            "action_type": "optimize_seo",
            "entity_id": "gid-1001",
            "payload": {"before": {"title": "Old Title"}, "after": {"title": "New Title"}},
            "estimated_impact": {"expected_revenue": 40.0, "confidence": "high"},
        }
        data.update(overrides)
        return store.create(data, merchant_id)

    return _make


@pytest.fixture
def client(platform: FakeStorePlatform, test_session: Session):
    def _override_session():
        with TestSessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_store_platform] = lambda: platform
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def file_session_factory(tmp_path):
    """
    sessionmaker on a SQLite file, for tests that run several threads
    against the database at once. Each thread must use its own session.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


# marker definitions
def pytest_configure(config):
    """Register pytest markers."""
    config.addinivalue_line("markers", "unit: unit tests (no database)")
    config.addinivalue_line("markers", "integration: integration tests (several services on a real SQLite file)")
    config.addinivalue_line("markers", "slow: slow tests (> 1 minute)")
