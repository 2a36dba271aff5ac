"""
Pytest configuration for the connector engine.

Provides an in-memory database, a fake provider API behind
httpx.MockTransport, seeded catalog rows and an API client.
"""

import os

from cryptography.fernet import Fernet

# settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ.setdefault("CONNECTOR_ENCRYPTION_KEY", Fernet.generate_key().decode("ascii"))

from typing import Any, Callable, Dict, Generator, List, Optional, Tuple  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import connector_hub.models  # noqa: E402,F401
from connector_hub.api.connectors import get_sync_dispatch  # noqa: E402
from connector_hub.connectors.registry import BUILTIN_ADAPTERS, AdapterRegistry, get_registry  # noqa: E402
from connector_hub.core.security import create_access_token  # noqa: E402
from connector_hub.core.vault import get_vault  # noqa: E402
from connector_hub.db.base import Base  # noqa: E402
from connector_hub.db.seeds.seed_connector_types import seed_connector_types  # noqa: E402
from connector_hub.db.session import get_db  # noqa: E402
from connector_hub.main import app  # noqa: E402
from connector_hub.models.connector import ConnectorStatus, ConnectorType  # noqa: E402
from connector_hub.services.cache_service import cache_service  # noqa: E402
from connector_hub.services.connector_service import ConnectorService  # noqa: E402

TENANT_ID = 1
OTHER_TENANT_ID = 2
ADMIN_ID = 10


# =====================================================
# TEST DATABASE
# =====================================================

@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite shared across threads, with working SAVEPOINTs."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # let SQLAlchemy emit BEGIN itself so nested transactions work
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="db")
def db_fixture(engine) -> Generator[Session, None, None]:
    factory = sessionmaker(bind=engine, autoflush=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


# =====================================================
# REDIS
# =====================================================

@pytest.fixture(autouse=True)
def published(monkeypatch) -> List[Tuple[str, str]]:
    """Capture pub/sub traffic instead of talking to Redis."""
    events: List[Tuple[str, str]] = []
    monkeypatch.setattr(cache_service, "publish", lambda channel, message: events.append((channel, message)))
    monkeypatch.setattr(cache_service, "health_check", lambda: False)
    return events


# =====================================================
# FAKE PROVIDER API
# =====================================================

class FakeAPI:
    """Routes httpx requests to canned responses keyed by (method, path).

    A route may hold a list of responses served in order (the last one
    repeats), or a callable receiving the httpx.Request.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, json: Any = None, status_code: int = 200,
            headers: Optional[Dict[str, str]] = None) -> None:
        self.routes.setdefault((method, path), []).append((status_code, json, headers or {}))

    def handle(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(method, path)] = handler

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": f"no route for {request.method} {request.url.path}"})
        if callable(route):
            return route(request)
        status_code, body, headers = route.pop(0) if len(route) > 1 else route[0]
        return httpx.Response(status_code, json=body, headers=headers)


@pytest.fixture
def fake_api() -> FakeAPI:
    return FakeAPI()


@pytest.fixture
def registry(fake_api) -> AdapterRegistry:
    transport = httpx.MockTransport(fake_api)
    return AdapterRegistry({
        name: (lambda cls=cls: cls(transport=transport)) for name, cls in BUILTIN_ADAPTERS.items()
    })


# =====================================================
# DATA FIXTURES
# =====================================================

@pytest.fixture
def catalog(db) -> Dict[str, ConnectorType]:
    seed_connector_types(db)
    return {t.name: t for t in db.query(ConnectorType).all()}


SAMPLE_CONFIGS = {
    "shopify": {"shop_domain": "acme.myshopify.com", "access_token": "shpat_test"},
    "stripe": {"secret_key": "sk_test_123", "publishable_key": "pk_test_123"},
    "woocommerce": {
        "site_url": "https://shop.example.com", "consumer_key": "ck_test", "consumer_secret": "cs_test",
    },
    "quickbooks": {"client_id": "qb-client", "client_secret": "qb-secret", "sandbox": True},
    "api_webhook": {"base_url": "https://api.example.com", "api_key": "generic-key"},
}


@pytest.fixture
def make_connector(db, catalog, registry):
    """Create a connector through the service; active unless told otherwise."""

    def _make(type_name: str = "shopify", name: Optional[str] = None, config: Optional[dict] = None,
              tenant_id: int = TENANT_ID, status: ConnectorStatus = ConnectorStatus.active):
        service = ConnectorService(db, registry=registry)
        connector = service.create(
            tenant_id=tenant_id,
            user_id=ADMIN_ID,
            connector_type_id=catalog[type_name].id,
            name=name or f"{type_name} main",
            config=config if config is not None else dict(SAMPLE_CONFIGS[type_name]),
        )
        connector.status = status
        db.commit()
        return connector

    return _make


@pytest.fixture
def vault():
    return get_vault()


# =====================================================
# API CLIENT
# =====================================================

@pytest.fixture
def dispatched() -> List[int]:
    """Sync log ids handed to the worker pool."""
    return []


@pytest.fixture(name="client")
def client_fixture(db, registry, dispatched) -> Generator[TestClient, None, None]:
    def get_db_override():
        yield db

    app.dependency_overrides[get_db] = get_db_override
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_sync_dispatch] = lambda: dispatched.append
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(role: str = "admin", tenant_id: int = TENANT_ID, user_id: int = ADMIN_ID) -> Dict[str, str]:
    token = create_access_token(user_id=user_id, tenant_id=tenant_id, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return auth_headers("admin")


@pytest.fixture
def viewer_headers() -> Dict[str, str]:
    return auth_headers("viewer")
