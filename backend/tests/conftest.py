"""
Test configuration and fixtures for the Todolisti backend tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for owner / assistant / unrelated users, grants, tasks and projects
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Generator, Dict, Callable

# Configure the app for tests before anything reads the environment
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db
from main import app
import models
from auth.security import create_access_token
import versioning

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create FastAPI test client with database dependency override.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def make_user(db: Session, name: str, email: str, is_active: bool = True) -> models.User:
    user = models.User(name=name, email=email, is_active=is_active)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {email} with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def owner_user(test_db: Session) -> models.User:
    """User who owns the data under test."""
    return make_user(test_db, "Owner User", "owner@test.com")


@pytest.fixture(scope="function")
def assistant_user(test_db: Session) -> models.User:
    """User who acts on the owner's behalf once granted access."""
    return make_user(test_db, "Assistant User", "assistant@test.com")


@pytest.fixture(scope="function")
def other_user(test_db: Session) -> models.User:
    """Unrelated user with no grants."""
    return make_user(test_db, "Other User", "other@test.com")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    return create_access_token({"sub": user.id, "email": user.email}, expires_delta)


def headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def owner_headers(owner_user: models.User) -> Dict[str, str]:
    return headers_for(owner_user)


@pytest.fixture(scope="function")
def assistant_headers(assistant_user: models.User) -> Dict[str, str]:
    return headers_for(assistant_user)


@pytest.fixture(scope="function")
def other_headers(other_user: models.User) -> Dict[str, str]:
    return headers_for(other_user)


@pytest.fixture(scope="function")
def grant(test_db: Session) -> Callable[..., models.Permission]:
    """
    Factory creating an active grant directly, bypassing the invitation flow.

    Usage: grant(owner_user, assistant_user, models.PermissionLevel.edit)
    """
    def _grant(owner: models.User, assistant: models.User, level: models.PermissionLevel) -> models.Permission:
        permission = models.Permission(
            owner_id=owner.id,
            assistant_id=assistant.id,
            level=level,
            is_active=True,
        )
        test_db.add(permission)
        test_db.commit()
        test_db.refresh(permission)
        return permission

    return _grant


@pytest.fixture(scope="function")
def make_task(test_db: Session) -> Callable[..., models.Task]:
    """Factory creating a task at sync_version 1 for a user."""
    def _make_task(user: models.User, title: str = "Test Task", **kwargs) -> models.Task:
        kwargs.setdefault("sync_version", 1)
        task = models.Task(user_id=user.id, title=title, **kwargs)
        test_db.add(task)
        test_db.commit()
        test_db.refresh(task)
        return task

    return _make_task


@pytest.fixture(scope="function")
def make_project(test_db: Session) -> Callable[..., models.Project]:
    """Factory creating a project at sync_version 1 for a user."""
    def _make_project(user: models.User, name: str = "Test Project", **kwargs) -> models.Project:
        kwargs.setdefault("sync_version", 1)
        project = models.Project(user_id=user.id, name=name, **kwargs)
        test_db.add(project)
        test_db.commit()
        test_db.refresh(project)
        return project

    return _make_project


@pytest.fixture(scope="function")
def concurrent_write(monkeypatch) -> Callable[..., None]:
    """
    Make versioned writes in a module lose the race to another client.

    Between the caller's read and its conditional UPDATE, another writer
    commits `values` at the same version, so the caller's write matches no row.

    Usage: concurrent_write(sync, {"title": "Theirs"})
           concurrent_write(sync, {"title": "Theirs"}, target="soft_delete")
    """
    def _install(module, values: Dict, target: str = "compare_and_set") -> None:
        write = getattr(module, target)

        def racing_write(db, model, entity_id, user_id, expected_version, *args):
            versioning.compare_and_set(db, model, entity_id, user_id, expected_version, values)
            db.commit()
            return write(db, model, entity_id, user_id, expected_version, *args)

        monkeypatch.setattr(module, target, racing_write)

    return _install
