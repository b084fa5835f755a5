import json
from datetime import datetime, timezone

import httpx
import pytest

from app.core.config import Settings
from app.models.inbound import InboundMessage
from app.repositories.inbound import InboundRepository
from app.services.supabase import DuplicateRowError, StorageError, SupabaseStore, eq, in_

SETTINGS = Settings(supabase_url="https://db.exemplo.supabase.co", supabase_service_role="service-key")


class PostgrestStub:
    def __init__(self, responses: dict[tuple[str, str], httpx.Response]) -> None:
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.get((request.method, request.url.path), httpx.Response(200, json=[]))


def _repository(stub: PostgrestStub) -> InboundRepository:
    return InboundRepository(SupabaseStore(SETTINGS, transport=httpx.MockTransport(stub)))


def test_filters() -> None:
    assert eq("abc") == "eq.abc"
    assert eq(True) == "eq.true"
    assert in_(["a", "b"]) == "in.(a,b)"


@pytest.mark.asyncio
async def test_requests_carry_service_role_headers() -> None:
    stub = PostgrestStub({("GET", "/rest/v1/inbound_messages"): httpx.Response(200, json=[{"id": 1}])})

    assert await _repository(stub).message_exists("msg-1") is True

    (request,) = stub.requests
    assert request.headers["apikey"] == "service-key"
    assert request.headers["Authorization"] == "Bearer service-key"
    assert request.url.params["message_id"] == "eq.msg-1"


@pytest.mark.asyncio
async def test_lock_acquisition_uses_compare_and_set_rpc() -> None:
    stub = PostgrestStub(
        {("POST", "/rest/v1/rpc/acquire_specific_batch_lock"): httpx.Response(200, json=[{"id": "b-1"}])}
    )
    now = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)
    stale = datetime(2025, 1, 6, 11, 58, tzinfo=timezone.utc)

    assert await _repository(stub).acquire_batch_lock("b-1", now=now, stale_before=stale) is True
    assert json.loads(stub.requests[0].content) == {
        "target_batch_id": "b-1",
        "now_iso": "2025-01-06T12:00:00.000Z",
        "lock_expiry_iso": "2025-01-06T11:58:00.000Z",
    }


@pytest.mark.asyncio
async def test_lock_held_elsewhere_returns_false() -> None:
    stub = PostgrestStub(
        {("POST", "/rest/v1/rpc/acquire_specific_batch_lock"): httpx.Response(200, json=[])}
    )
    now = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

    assert await _repository(stub).acquire_batch_lock("b-1", now=now, stale_before=now) is False


@pytest.mark.asyncio
async def test_job_transition_filters_by_previous_status() -> None:
    stub = PostgrestStub({})

    await _repository(stub).update_jobs(
        "b-1", from_status="processing", patch={"status": "completed", "response_text": "ok"}
    )

    (request,) = stub.requests
    assert request.method == "PATCH"
    assert request.url.params["batch_id"] == "eq.b-1"
    assert request.url.params["status"] == "eq.processing"
    assert request.headers["Prefer"] == "return=representation"


@pytest.mark.asyncio
async def test_disabled_conversation_requires_explicit_true() -> None:
    stub = PostgrestStub(
        {("GET", "/rest/v1/conversations"): httpx.Response(200, json=[{"agent_enabled": None}])}
    )

    assert await _repository(stub).conversation_agent_enabled("conv-1") is False


@pytest.mark.asyncio
async def test_error_status_raises_storage_error() -> None:
    stub = PostgrestStub({("GET", "/rest/v1/inbound_jobs"): httpx.Response(503, text="unavailable")})

    with pytest.raises(StorageError, match="503"):
        await _repository(stub).pending_jobs("b-1")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(409, json={"code": "23505", "message": "duplicate key value"}),
        httpx.Response(400, json={"code": "23505", "message": "duplicate key value"}),
    ],
)
async def test_unique_violation_raises_duplicate_row_error(response: httpx.Response) -> None:
    stub = PostgrestStub({("POST", "/rest/v1/inbound_messages"): response})
    message = InboundMessage(
        message_id="msg-1", location_id="loc", contact_id="contact-1", conversation_id="conv-1"
    )

    with pytest.raises(DuplicateRowError, match="inbound_messages"):
        await _repository(stub).insert_message(message)


@pytest.mark.asyncio
async def test_batch_claim_only_moves_pending_batches() -> None:
    claimed = PostgrestStub(
        {("PATCH", "/rest/v1/conversation_batches"): httpx.Response(200, json=[{"id": "b-1"}])}
    )
    taken = PostgrestStub({})

    assert await _repository(claimed).claim_batch("b-1") is True
    assert await _repository(taken).claim_batch("b-1") is False

    request = claimed.requests[0]
    assert request.url.params["id"] == "eq.b-1"
    assert request.url.params["status"] == "eq.pending"
    assert json.loads(request.content) == {"status": "processing"}


@pytest.mark.asyncio
async def test_missing_configuration_raises() -> None:
    store = SupabaseStore(Settings(supabase_url=None, supabase_service_role=None))

    with pytest.raises(StorageError, match="não está configurado"):
        await store.select("agents", params={})
