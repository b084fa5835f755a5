"""Testes do cache de dois níveis de tokens do CRM."""

import json
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from app.core.config import Settings
from app.repositories.tokens import AgencyToken, LocationToken
from app.services.ghl_auth import CrmTokenBroker, TokenBrokerError, strip_bearer
from fakes import FakeClock


class FakeTokens:
    def __init__(self, location=None, agency=None) -> None:
        self.location = location
        self.agency = agency
        self.saved_locations: list[tuple] = []
        self.saved_agency: list[tuple] = []

    async def get_location_token(self, location_id):
        return self.location

    async def save_location_token(self, location_id, access_token, expires_at):
        self.saved_locations.append((location_id, access_token, expires_at))

    async def get_agency_token(self):
        return self.agency

    async def save_agency_token(self, access_token, refresh_token, expires_at):
        self.saved_agency.append((access_token, refresh_token, expires_at))


class OAuthStub:
    def __init__(self, *, mint_status: int = 200, mint_payload: dict | None = None) -> None:
        self.mint_status = mint_status
        self.mint_payload = mint_payload or {"access_token": "Bearer loc-token", "expires_in": 3600}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/token":
            return httpx.Response(
                200,
                json={"access_token": "agency-new", "refresh_token": "refresh-new", "expires_in": 7200},
            )
        if request.url.path == "/oauth/locationToken":
            return httpx.Response(self.mint_status, json=self.mint_payload)
        return httpx.Response(404)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


SETTINGS = Settings(
    ghl_client_id="client",
    ghl_client_secret="secret",
    ghl_company_id="company-1",
    ghl_redirect_uri="https://app.exemplo.com/callback",
)


def _broker(tokens: FakeTokens, stub: OAuthStub, clock: FakeClock) -> CrmTokenBroker:
    return CrmTokenBroker(tokens, SETTINGS, transport=httpx.MockTransport(stub), clock=clock)


@pytest.mark.asyncio
async def test_valid_cached_location_token_is_reused(clock: FakeClock) -> None:
    tokens = FakeTokens(location=LocationToken("Bearer cached", clock.now + timedelta(minutes=5)))
    stub = OAuthStub()

    assert await _broker(tokens, stub, clock).get_location_token("loc-1") == "cached"
    assert stub.requests == []


@pytest.mark.asyncio
async def test_expired_location_token_is_minted_with_fresh_agency_token(clock: FakeClock) -> None:
    tokens = FakeTokens(
        location=LocationToken("old", clock.now - timedelta(seconds=1)),
        agency=AgencyToken("agency-old", "refresh-old", clock.now + timedelta(hours=1)),
    )
    stub = OAuthStub()

    token = await _broker(tokens, stub, clock).get_location_token("loc-1")

    assert token == "loc-token"
    assert stub.paths() == ["/oauth/locationToken"]
    mint = stub.requests[0]
    assert mint.headers["Authorization"] == "Bearer agency-old"
    assert mint.headers["Version"] == "2021-07-28"
    assert json.loads(mint.content) == {"locationId": "loc-1", "companyId": "company-1"}
    assert tokens.saved_locations == [("loc-1", "loc-token", clock.now + timedelta(seconds=3600))]


@pytest.mark.asyncio
async def test_agency_token_near_expiry_is_refreshed_first(clock: FakeClock) -> None:
    tokens = FakeTokens(agency=AgencyToken("agency-old", "refresh-old", clock.now + timedelta(seconds=60)))
    stub = OAuthStub(mint_payload={"data": {"accessToken": "nested-token"}})

    token = await _broker(tokens, stub, clock).get_location_token("loc-1")

    assert token == "nested-token"
    assert stub.paths() == ["/oauth/token", "/oauth/locationToken"]
    form = parse_qs(stub.requests[0].content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["refresh-old"]
    assert form["user_type"] == ["Company"]
    assert stub.requests[1].headers["Authorization"] == "Bearer agency-new"
    assert tokens.saved_agency == [("agency-new", "refresh-new", clock.now + timedelta(seconds=7200))]
    # Sem expires_in, o token da location vale um dia.
    assert tokens.saved_locations[0][2] == clock.now + timedelta(days=1)


@pytest.mark.asyncio
async def test_missing_agency_token_raises(clock: FakeClock) -> None:
    with pytest.raises(TokenBrokerError, match="Agency token not found"):
        await _broker(FakeTokens(), OAuthStub(), clock).get_location_token("loc-1")


@pytest.mark.asyncio
async def test_mint_error_raises(clock: FakeClock) -> None:
    tokens = FakeTokens(agency=AgencyToken("agency", "refresh", clock.now + timedelta(hours=1)))
    stub = OAuthStub(mint_status=401, mint_payload={"message": "unauthorized"})

    with pytest.raises(TokenBrokerError, match="Erro ao gerar token de location"):
        await _broker(tokens, stub, clock).get_location_token("loc-1")
    assert tokens.saved_locations == []


def test_strip_bearer() -> None:
    assert strip_bearer("Bearer abc") == "abc"
    assert strip_bearer("bearer  abc ") == "abc"
    assert strip_bearer(None) == ""
