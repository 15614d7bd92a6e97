"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.core.rate_limit import default_rate_limiter
from app.core.security import create_access_token, get_password_hash
from app.database import get_db
from app.main import app
from app.models import Base, User
from app.services.realtime import build_realtime


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(session_factory) -> Callable[..., User]:
    """Create a user row and return it detached from its session."""

    def factory(login: str, display_name: str | None = None, password: str = "secret123") -> User:
        with session_factory() as session:
            user = User(
                login=login,
                display_name=display_name or login.title(),
                hashed_password=get_password_hash(password),
            )
            session.add(user)
            session.commit()
            return user

    return factory


@pytest.fixture()
def token_for() -> Callable[[User], str]:
    def factory(user: User) -> str:
        return create_access_token({"sub": str(user.id)})

    return factory


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a TestClient whose database and realtime stores use the test engine."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    build_realtime(session_factory)
    default_rate_limiter.reset()
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    default_rate_limiter.reset()
