"""Shared fixtures: a throwaway SQLite database, users with tokens and scripted model backends."""
import os

os.environ["DATABASE_URL"] = "sqlite://"

import asyncio
from typing import List, Optional

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from client.api import ChatClient
from database import build_engine, get_db
from main import app, get_chat_upstream
from models import Base
from schemas.auth import UserCreate
from schemas.chat import ModelInfo
from services.auth import AuthService


class FakeUpstream:
    """Scripted model backend: yields ``chunks`` then raises ``error`` if set."""

    def __init__(self, chunks=None, error: Optional[Exception] = None, delay: float = 0.0, models=None):
        self.chunks = list(chunks or [])
        self.error = error
        self.delay = delay
        self.models = models or [ModelInfo(id="fake-model", name="Fake Model")]
        self.calls: List[dict] = []
        self.delivered: List[str] = []
        self.closed = False

    async def stream(self, messages, model=None):
        self.calls.append({"messages": messages, "model": model})
        try:
            for chunk in self.chunks:
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.delivered.append(chunk)
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True

    async def list_models(self):
        return list(self.models)


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def upstream():
    return FakeUpstream(chunks=["Recursion ", "is when ", "a function calls itself."])


@pytest.fixture
def test_app(session_factory, upstream):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chat_upstream] = lambda: upstream
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(test_app):
    return TestClient(test_app)


def _create_user(db, username: str):
    return AuthService.create_user(
        db, UserCreate(email=f"{username}@example.com", username=username, password="secret123")
    )


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {AuthService.create_access_token(user.id)}"}


@pytest.fixture
def alice(db):
    return _create_user(db, "alice")


@pytest.fixture
def bob(db):
    return _create_user(db, "bob")


@pytest.fixture
def alice_headers(alice):
    return auth_headers(alice)


@pytest.fixture
def bob_headers(bob):
    return auth_headers(bob)


@pytest_asyncio.fixture
async def chat_client(test_app, alice):
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=test_app), base_url="http://testserver")
    api = ChatClient(client=http, token=AuthService.create_access_token(alice.id))
    yield api
    await api.aclose()
