"""
Test configuration and fixtures.

Provides:
- A fresh SQLite schema per test (file-backed so request threads and
  background tasks share it)
- User fixtures and a recording notification transport
- HTTPX AsyncClient with gateway identity headers
"""
import os
import tempfile
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncGenerator, Generator

# Configure before any chatline import reads settings
_DB_DIR = tempfile.mkdtemp(prefix="chatline-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"
os.environ["NOTIFICATION_APP_IDS"] = "mobile,web"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from chatline.core.deps import get_db
from chatline.db.base import Base
from chatline.db.enums import NotificationChannel, Role
from chatline.db.models import User
from chatline.db.session import SessionLocal, engine
from chatline.main import create_app
from chatline.services.blob_store import InMemoryBlobStore
from chatline.services.notification_dispatch_service import NotificationDispatcher
from chatline.services.notification_transports import Delivery, InAppTransport, TransportReceipt


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Creates all tables, yields a session, then drops everything."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


def make_user(db: Session, name: str = "Test User", role: Role = Role.CUSTOMER, **fields) -> User:
    first, _, last = name.partition(" ")
    user = User(
        id=uuid.uuid4(),
        external_id=uuid.uuid4(),
        display_name=name,
        first_name=first or None,
        last_name=last or None,
        email=fields.pop("email", f"{first.lower() or 'user'}-{uuid.uuid4().hex[:8]}@test.com"),
        role=role.value,
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture(scope="function")
def alice(db: Session) -> User:
    return make_user(db, "Alice Smith")


@pytest.fixture(scope="function")
def bob(db: Session) -> User:
    return make_user(db, "Bob Jones")


@pytest.fixture(scope="function")
def carol(db: Session) -> User:
    return make_user(db, "Carol White", role=Role.PROVIDER)


@pytest.fixture(scope="function")
def admin(db: Session) -> User:
    return make_user(db, "Ada Admin", role=Role.ADMINISTRATOR)


# =============================================================================
# Transport Fixtures
# =============================================================================

@dataclass
class RecordingTransport:
    """Transport double that records deliveries and returns a scripted receipt."""
    accepted: int = 1
    invalid_tokens: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    raises: Exception | None = None
    deliveries: list[Delivery] = field(default_factory=list)

    async def send(self, delivery: Delivery) -> TransportReceipt:
        self.deliveries.append(delivery)
        if self.raises is not None:
            raise self.raises
        return TransportReceipt(
            accepted=self.accepted,
            invalid_tokens=list(self.invalid_tokens),
            errors=list(self.errors),
        )


@pytest.fixture(scope="function")
def push_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture(scope="function")
def email_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture(scope="function")
def dispatcher(push_transport, email_transport) -> NotificationDispatcher:
    return NotificationDispatcher(
        {
            NotificationChannel.PUSH: push_transport,
            NotificationChannel.EMAIL: email_transport,
            NotificationChannel.IN_APP: InAppTransport(),
        },
        timeout=5,
    )


@pytest.fixture(scope="function")
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def app(db: Session, dispatcher: NotificationDispatcher, blob_store: InMemoryBlobStore):
    application = create_app(dispatcher=dispatcher, blob_store=blob_store)

    def override_get_db():
        yield db

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


def identity_headers(user: User) -> dict[str, str]:
    return {
        "X-User-Id": str(user.external_id),
        "X-User-Role": user.role,
    }


@asynccontextmanager
async def client_for(app, user: User | None = None) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers=identity_headers(user) if user else None,
    ) as c:
        yield c


@pytest.fixture(scope="function")
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient."""
    async with client_for(app) as c:
        yield c


@pytest.fixture(scope="function")
def user_factory(db: Session):
    def _make(name: str = "Test User", role: Role = Role.CUSTOMER, **fields) -> User:
        return make_user(db, name, role, **fields)
    return _make


@pytest.fixture(scope="function")
def client_as(app):
    """``async with client_as(user) as c`` - client authenticated as ``user``."""
    def _client(user: User | None = None):
        return client_for(app, user)
    return _client
