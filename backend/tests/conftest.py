"""Fixtures compartilhadas pelos testes."""

import pytest
from httpx import ASGITransport, AsyncClient

from app.main import app
from fakes import FakeClock, InMemoryRepository


@pytest.fixture(name="async_client")
async def fixture_async_client() -> AsyncClient:
    """Cliente assíncrono contra a app principal usando ASGITransport."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="clock")
def fixture_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="repository")
def fixture_repository() -> InMemoryRepository:
    repository = InMemoryRepository()
    repository.seed_conversation()
    return repository
