"""Shared pytest fixtures for branchchat tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from branchchat.chats.router import get_chat_service
from branchchat.chats.service import ChatService
from branchchat.client.http import HttpChatTransport
from branchchat.db.connection import Database
from branchchat.main import app
from branchchat.sync.controller import SyncController
from tests.fixtures import FakeTransport


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
async def service(db):
    """ChatService backed by the in-memory database, default speakers seeded."""
    chat_service = ChatService(db)
    await chat_service.seed_default_speakers()
    return chat_service


@pytest.fixture
async def client(service):
    """Async test client with in-memory DB wired into the app."""
    app.dependency_overrides[get_chat_service] = lambda: service
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
async def http_transport(service):
    """HttpChatTransport talking to the app in-process."""
    app.dependency_overrides[get_chat_service] = lambda: service
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test/api",
    ) as api_client:
        yield HttpChatTransport(client=api_client)
    app.dependency_overrides.clear()


@pytest.fixture
def fake_transport():
    """Empty FakeTransport; tests seed `server` with conversations."""
    return FakeTransport()


@pytest.fixture
def controller(fake_transport):
    return SyncController(fake_transport)
