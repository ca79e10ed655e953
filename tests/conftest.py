import os

# Configure the application before it is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret"

import pytest
from fastapi.testclient import TestClient

from etf_tracker.api import app
from etf_tracker.auth import create_access_token, hash_password
from etf_tracker.credentials import create_user
from etf_tracker.database import Base, SessionLocal, engine
from etf_tracker.models.user import Role


@pytest.fixture(autouse=True)
def fresh_database():
    """Give every test an empty schema."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user(session):
    def _make(username: str, role: Role = Role.USER, password: str = "password"):
        return create_user(session, username, hash_password(password), role)

    return _make


@pytest.fixture
def auth_header():
    def _header(user) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return _header
