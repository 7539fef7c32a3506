import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone

# settings are read at import time; point the app at throwaway storage first
os.environ.setdefault("ORDERPAY_DATABASE_URL", "sqlite+pysqlite:///./orderpay_test.db")
os.environ.setdefault("ORDERPAY_TESTING", "true")
os.environ.setdefault("PROOF_STORAGE_DIR", tempfile.mkdtemp(prefix="orderpay-proofs-"))
os.environ.setdefault("PROOF_PUBLIC_BASE_URL", "http://testserver")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

import orderpay.models  # noqa: F401,E402
from orderpay.config import settings  # noqa: E402
from orderpay.db.base import Base  # noqa: E402
from orderpay.db.session import engine as app_engine  # noqa: E402
from orderpay.db.session import get_db  # noqa: E402
from orderpay.dependencies import reset_rate_limits  # noqa: E402
from orderpay.integrations.notifications import (  # noqa: E402
    NotificationDispatcher,
    OrderNotification,
    get_notification_dispatcher,
)
from orderpay.integrations.proof_store import build_proof_key  # noqa: E402
from orderpay.main import app  # noqa: E402
from orderpay.observability import metrics_store  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


class RecordingProofStore:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.calls = 0
        self.error: Exception | None = None
        self.before_store = None

    def store(self, order_token, content, extension, *, content_type, submitted_at) -> str:
        self.calls += 1
        if self.before_store is not None:
            hook, self.before_store = self.before_store, None
            hook()
        if self.error is not None:
            raise self.error
        key = build_proof_key(order_token, submitted_at, extension)
        self.objects[key] = content
        return f"https://blobs.test/{key}"


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[OrderNotification] = []
        self.error: Exception | None = None

    def send(self, notification: OrderNotification) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(notification)


@pytest.fixture(scope="session", autouse=True)
def setup_test_schema():
    Base.metadata.drop_all(bind=app_engine)
    Base.metadata.create_all(bind=app_engine)
    yield
    Base.metadata.drop_all(bind=app_engine)


@pytest.fixture(autouse=True)
def reset_db():
    reset_rate_limits()
    Base.metadata.drop_all(bind=app_engine)
    Base.metadata.create_all(bind=app_engine)
    yield


@pytest.fixture(autouse=True)
def reset_metrics_store():
    metrics_store.reset()
    yield


@pytest.fixture(scope="session", autouse=True)
def enable_testing_mode():
    original = settings.testing
    settings.testing = True
    yield
    settings.testing = original


@pytest.fixture
def session_factory():
    return sessionmaker(autocommit=False, autoflush=False, bind=app_engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def proof_store():
    return RecordingProofStore()


@pytest.fixture
def notification_sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(notification_sink):
    return NotificationDispatcher(notification_sink)


@pytest.fixture
def order_payload():
    return {
        "name": "Ayesha Khan",
        "email": "ayesha@example.com",
        "phone": "03001234567",
        "address": "House 12, Street 4, Lahore",
        "payment_method": "online",
        "items": [
            {"product_name": "Lawn Suit", "price": "2499.00", "quantity": 1},
            {"product_name": "Dupatta", "price": "899.50", "quantity": 2},
        ],
    }


@pytest.fixture
def client(db_session, session_factory, dispatcher):
    db_session_lock = threading.Lock()

    def override_get_db():
        if db_session_lock.acquire(blocking=False):
            try:
                yield db_session
            finally:
                db_session_lock.release()
            return

        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
