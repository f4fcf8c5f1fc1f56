"""
Shared test database, client and auth overrides
"""

import os

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ENCRYPTION_KEY", "0123456789abcdef0123456789abcdef")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.auth.auth_handler import get_current_user
from app.models.ward import Hospital, Ward
from app.services.encryption import EncryptionGateway
from main import app

TEST_KEY = "0123456789abcdef0123456789abcdef"

# Test database setup
SQLALCHEMY_DATABASE_URL = "sqlite://"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ADMIN_USER = {"user_id": "1", "username": "admin.user", "role": "admin"}


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def tables():
    """Fresh schema for every test"""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def wards(db):
    """Two hospitals with a few wards"""
    db.add_all([
        Hospital(id=1, name="General Hospital"),
        Hospital(id=2, name="Royal Infirmary"),
    ])
    db.add_all([
        Ward(id=1, name="Ward A", hospital_id=1),
        Ward(id=2, name="Ward B", hospital_id=2),
        Ward(id=7, name="Critical Care", hospital_id=1),
    ])
    db.commit()


@pytest.fixture
def encryption():
    return EncryptionGateway(TEST_KEY)


@pytest.fixture
def plain():
    return EncryptionGateway(None)


@pytest.fixture
def current_user():
    """Mutable user returned by the auth override; tests may change the role"""
    return dict(ADMIN_USER)


@pytest.fixture
def client(current_user):
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: current_user
    yield TestClient(app)
    app.dependency_overrides.clear()
