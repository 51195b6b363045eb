"""
Pytest configuration and fixtures for the readiness engine tests.

Provides:
- Test database setup/teardown
- FastAPI test client
- Shared user, question and scenario fixtures (builders live in tests/factories.py)
"""

import pytest
import os
from typing import Callable, Generator, List
from datetime import datetime, timedelta
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

# Set test environment before importing app
os.environ["DATABASE_URL"] = "sqlite:///./test_readiness.db"
os.environ["ENABLE_READINESS_AGG"] = "false"
os.environ["REDIS_URL"] = ""

from app.main import app
from app.database import Base, get_db, install_query_timing
from app.models.models import User, Question, QuestionAttempt
from app.utils.cache import cache
from tests.factories import create_attempt, create_catalog, create_question, create_user


# Test database setup
TEST_DATABASE_URL = "sqlite:///./test_readiness.db"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False}
)
install_query_timing(test_engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create test database tables once per test session"""
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()
    if os.path.exists("./test_readiness.db"):
        os.remove("./test_readiness.db")


@pytest.fixture(autouse=True)
def clear_analytics_cache():
    """Profiles and patterns live in a process-wide cache; isolate tests from each other"""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Provide a database session for each test, with rollback after"""
    connection = test_engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(scope="function")
def committed_session_factory() -> Generator[Callable[[], Session], None, None]:
    """
    Session factory whose commits are real, for code that opens its own sessions.

    Every table is emptied afterwards.
    """
    yield TestingSessionLocal

    cleanup = TestingSessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            cleanup.execute(table.delete())
        cleanup.commit()
    finally:
        cleanup.close()


@pytest.fixture(scope="function")
def client(db: Session) -> Generator[TestClient, None, None]:
    """Provide FastAPI test client with database override"""
    def override_get_db():
        try:
            yield db
        finally:
            pass  # Don't close - let the fixture handle it

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# =========================================================================
# Fixtures
# =========================================================================

@pytest.fixture
def test_user(db: Session) -> User:
    """Create a test user"""
    return create_user(db, "test-user-123")


@pytest.fixture
def test_question(db: Session) -> Question:
    return create_question(db, question_id="test-question-123")


@pytest.fixture
def scenario_history(db: Session, test_user: User) -> List[QuestionAttempt]:
    """
    Five categories in the catalog; the user answers five Cardiology questions
    correct, correct, wrong, correct, wrong at 60 seconds each.
    """
    catalog = create_catalog(db, ["Cardiology", "Neurology", "Renal", "Pulmonology", "Endocrine"])
    cardiology = [catalog["Cardiology"][0]] + [create_question(db, category="Cardiology") for _ in range(4)]

    now = datetime.utcnow()
    attempts = []
    for i, (question, outcome) in enumerate(zip(cardiology, [True, True, False, True, False])):
        attempts.append(create_attempt(
            db, test_user, question, outcome,
            time_taken_seconds=60,
            attempted_at=now - timedelta(minutes=10 - i),
        ))
    return attempts
