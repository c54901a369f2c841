"""
Test configuration and fixtures for dashboard backend tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Common fixtures for users, projects and board tasks
"""

import os
import sys
import logging
from typing import Dict, Generator, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.dialects.postgresql import JSONB

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# The application engine is never used in tests; keep it off PostgreSQL
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["DATABASE_AUTO_CREATE"] = "false"

from database import Base, get_db
from main import app
import models

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

    # Replace PostgreSQL-specific types with SQLite-compatible types
    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
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


@pytest.fixture(scope="function")
def admin_user(test_db: Session) -> models.User:
    user = models.User(name="Admin User", email="admin@acme.com", role="admin", is_active=True)
    test_db.add(user)
    test_db.commit()
    test_db.refresh(user)
    logger.info(f"Created admin user with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def regular_user(test_db: Session) -> models.User:
    user = models.User(name="Regular User", email="user@acme.com", role="editor", is_active=True)
    test_db.add(user)
    test_db.commit()
    test_db.refresh(user)
    logger.info(f"Created regular user with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def project(test_db: Session, admin_user: models.User) -> models.Project:
    """
    Create a test project owned by the admin user.
    """
    p = models.Project(name="Test Project", description="A project for testing", owner_id=admin_user.id)
    test_db.add(p)
    test_db.commit()
    test_db.refresh(p)
    logger.info(f"Created test project with ID: {p.id}")
    return p


@pytest.fixture(scope="function")
def other_project(test_db: Session) -> models.Project:
    p = models.Project(name="Other Project")
    test_db.add(p)
    test_db.commit()
    test_db.refresh(p)
    return p


def make_task(
    db: Session,
    project_id: int,
    title: str,
    column: models.TaskColumn = models.TaskColumn.todo,
    position: int = 0,
    **kwargs
) -> models.Task:
    """Insert a task row directly with an explicit board slot."""
    task = models.Task(
        project_id=project_id,
        title=title,
        board_column=column,
        status=column,
        position=position,
        **kwargs
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def make_bucket(db: Session, project_id: int, column: models.TaskColumn, *titles: str) -> Dict[str, models.Task]:
    """Insert tasks into one bucket at positions 0..N-1, keyed by title."""
    return {
        title: make_task(db, project_id, title, column, position)
        for position, title in enumerate(titles)
    }


def bucket_titles(db: Session, project_id: int, column: models.TaskColumn) -> List[str]:
    """Titles of a bucket in rank order."""
    db.expire_all()
    tasks = (
        db.query(models.Task)
        .filter(models.Task.project_id == project_id, models.Task.board_column == column)
        .order_by(models.Task.position.asc())
        .all()
    )
    return [t.title for t in tasks]


def bucket_positions(db: Session, project_id: int, column: models.TaskColumn) -> List[int]:
    db.expire_all()
    rows = (
        db.query(models.Task.position)
        .filter(models.Task.project_id == project_id, models.Task.board_column == column)
        .order_by(models.Task.position.asc())
        .all()
    )
    return [row[0] for row in rows]


def assert_dense(db: Session, project_id: int) -> None:
    """Every bucket of the project is ranked exactly 0..N-1."""
    for column in models.TaskColumn:
        positions = bucket_positions(db, project_id, column)
        assert positions == list(range(len(positions))), f"{column.value} is not dense: {positions}"
