"""
Pytest configuration and fixtures for backend tests.
"""
import os
import sys
import uuid
from typing import Callable, Generator
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# 必须在导入 adledger 之前设置，Settings 在导入时读取环境变量
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("WORKFLOW_CALLBACK_SECRET", "test-workflow-key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ["AUTO_CREATE_TABLES"] = "false"
os.environ["AUTO_SEED_PLANS"] = "false"

from adledger.core.database import Base, get_db, use_immediate_transactions
from adledger.core.security import create_access_token
from adledger.models import User
from adledger.services.plans import seed_plans
from adledger.services.tokens import provision_account
from main import app

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite://"
engine = use_immediate_transactions(
    create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        seed_plans(session)
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session: Session) -> TestClient:
    """Create a test client with overridden database dependency."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    """Create a user row."""
    def _make(email: str | None = None) -> User:
        user = User(id=str(uuid.uuid4()), email=email or f"{uuid.uuid4().hex[:8]}@example.com")
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def make_account(db_session: Session, make_user) -> Callable[..., User]:
    """Create a user whose token account starts at the given balance (recorded as INITIAL_GRANT)."""
    def _make(balance: int = 100, email: str | None = None) -> User:
        user = make_user(email)
        provision_account(db_session, user.id, initial_grant=balance)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def auth_headers_for() -> Callable[[User], dict]:
    """Generate authentication headers for a user."""
    def _headers(user: User) -> dict:
        token = create_access_token(data={"sub": user.id})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def workflow_headers():
    return {"X-Workflow-Key": os.environ["WORKFLOW_CALLBACK_SECRET"]}


@pytest.fixture
def cron_headers():
    return {"Authorization": f"Bearer {os.environ['CRON_SECRET']}"}
