"""
Test configuration and fixtures.

Provides:
- A fresh in-memory SQLite database per test
- Seed organisation / users / case
- HTTPX AsyncClients carrying the external and internal secret headers
- A recording fake for the email transport
"""
import os
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import AsyncGenerator, Generator

# Must be set before the app (and its engine / limiter) is imported
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "test"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.deps import get_db
from app.db.base import Base
from app.db.enums import Role
from app.db.models import Case, Organisation, User, UserOrganisation
from app.db.session import build_engine
from app.main import app
from app.services import email_service

EXTERNAL_SECRET = "test-external-secret"
INTERNAL_SECRET = "test-internal-secret"


# =============================================================================
# Database Fixtures (fresh database per test)
# =============================================================================

@pytest.fixture(scope="function")
def db_engine() -> Generator[Engine, None, None]:
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db(db_engine: Engine) -> Generator[Session, None, None]:
    """Session on the per-test database. App code commits freely."""
    session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def secrets_configured(monkeypatch):
    monkeypatch.setattr(settings, "EXTERNAL_API_SECRET", EXTERNAL_SECRET)
    monkeypatch.setattr(settings, "INTERNAL_SECRET", INTERNAL_SECRET)
    monkeypatch.setattr(settings, "DEFAULT_NOTIFICATION_EMAIL", "")
    monkeypatch.setattr(settings, "ALLOW_ACCOUNT_NUMBER_FALLBACK", False)
    monkeypatch.setattr(settings, "AUDIT_ENABLED", True)


# =============================================================================
# Email Fake
# =============================================================================

@dataclass
class SentEmail:
    to: str
    subject: str
    html: str
    idempotency_key: str | None = None


@dataclass
class EmailRecorder:
    sent: list[SentEmail] = field(default_factory=list)
    fail_for: set[str] = field(default_factory=set)

    def send(self, to_email, subject, html, idempotency_key=None) -> bool:
        if to_email in self.fail_for:
            return False
        self.sent.append(SentEmail(to_email, subject, html, idempotency_key))
        return True

    @property
    def recipients(self) -> list[str]:
        return [email.to for email in self.sent]


@pytest.fixture(autouse=True)
def outbox(monkeypatch) -> EmailRecorder:
    """Replace the email transport with a recorder."""
    recorder = EmailRecorder()
    monkeypatch.setattr(email_service, "send_email", recorder.send)
    return recorder


# =============================================================================
# Seed Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def test_org(db: Session) -> Organisation:
    """Create a test organisation."""
    org = Organisation(
        id=uuid.uuid4(),
        name="Test Organisation",
        external_ref=f"ORG-{uuid.uuid4().hex[:8]}",
    )
    db.add(org)
    db.commit()
    return org


def make_user(
    db: Session,
    *,
    role: Role = Role.MEMBER,
    first_name: str | None = None,
    last_name: str | None = None,
    organisation: Organisation | None = None,
    **kwargs,
) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"user-{uuid.uuid4().hex[:8]}@test.com",
        first_name=first_name,
        last_name=last_name,
        role=role.value,
        **kwargs,
    )
    db.add(user)
    db.flush()
    if organisation is not None:
        db.add(UserOrganisation(user_id=user.id, organisation_id=organisation.id, role=Role.MEMBER.value))
    db.commit()
    return user


@pytest.fixture(scope="function")
def user_factory(db: Session):
    def factory(**kwargs) -> User:
        return make_user(db, **kwargs)
    return factory


@pytest.fixture(scope="function")
def admin_user(db: Session) -> User:
    """Case handler admin."""
    return make_user(db, role=Role.ADMIN, first_name="Alice", last_name="Handler")


@pytest.fixture(scope="function")
def super_admin(db: Session) -> User:
    return make_user(db, role=Role.SUPER_ADMIN, first_name="Sam", last_name="Root")


@pytest.fixture(scope="function")
def member_user(db: Session, test_org: Organisation) -> User:
    """Organisation member who has completed first login."""
    return make_user(db, first_name="Mia", last_name="Member", organisation=test_org)


@pytest.fixture(scope="function")
def test_case(db: Session, test_org: Organisation) -> Case:
    case = Case(
        id=uuid.uuid4(),
        organisation_id=test_org.id,
        account_number="ACC-1",
        case_name="Debtor Ltd",
        external_ref=f"CASE-{uuid.uuid4().hex[:8]}",
        original_amount=Decimal("1000.00"),
        outstanding_amount=Decimal("1000.00"),
        assigned_to="Alice Handler",
    )
    db.add(case)
    db.commit()
    return case


# =============================================================================
# Client Fixtures
# =============================================================================

def _override_db(db: Session):
    def override_get_db():
        yield db
    return override_get_db


@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient."""
    app.dependency_overrides[get_db] = _override_db(db)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def external_client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient carrying the external API key."""
    app.dependency_overrides[get_db] = _override_db(db)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-External-Api-Key": EXTERNAL_SECRET},
    ) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def internal_client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient carrying the internal secret; pass X-Actor-User-Id per request."""
    app.dependency_overrides[get_db] = _override_db(db)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Internal-Secret": INTERNAL_SECRET},
    ) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def as_user():
    """Header naming the acting portal user."""
    def headers(user: User) -> dict[str, str]:
        return {"X-Actor-User-Id": str(user.id)}
    return headers
