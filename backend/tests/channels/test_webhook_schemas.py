import pytest

from app.channels.inbound.schemas import WebhookMessage, unwrap_envelope
from app.channels.inbound.service import InboundService, MissingIdentifiersError
from app.core.tasks import BackgroundTaskRegistry
from fakes import T0, FakeClock, InMemoryRepository

MESSAGE = {"messageId": "m-1", "conversationId": "c-1", "type": "InboundMessage"}


@pytest.mark.parametrize(
    "payload",
    [
        MESSAGE,
        {"body": MESSAGE},
        [{"body": MESSAGE}],
        [MESSAGE],
        [{"body": {"body": MESSAGE}}],
    ],
)
def test_envelopes_unwrap_to_the_message(payload) -> None:
    assert unwrap_envelope(payload) == MESSAGE


def test_body_that_is_text_is_not_an_envelope() -> None:
    payload = {"messageId": "m-1", "body": "Oi"}
    assert unwrap_envelope(payload) == payload
    assert unwrap_envelope([]) == {}
    assert unwrap_envelope("texto") == {}


def test_message_id_fallback_uses_conversation_and_time() -> None:
    with_date = WebhookMessage.from_payload({"conversationId": "c-1", "dateAdded": "2025-01-06"})
    assert with_date.message_id == "c-1:2025-01-06"

    without = WebhookMessage.from_payload({}, now=T0)
    assert without.message_id == f"unknown:{int(T0.timestamp() * 1000)}"


def test_direction_and_call_filters() -> None:
    assert WebhookMessage.from_payload({"messageId": "m"}).is_inbound
    assert not WebhookMessage.from_payload({"messageId": "m", "direction": "outbound"}).is_inbound
    assert WebhookMessage.from_payload({"messageId": "m", "messageType": "call"}).is_call


def test_missing_identifiers_are_listed() -> None:
    message = WebhookMessage.from_payload({"messageId": "m", "conversationId": "c"})
    assert message.missing_identifiers() == ["locationId", "contactId"]


def _service(repository: InMemoryRepository, clock: FakeClock) -> InboundService:
    # O runner nunca roda nesses cenários; nenhum batch é agendado.
    return InboundService(repository, runner=object(), tasks=BackgroundTaskRegistry(), clock=clock)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"direction": "outbound"}, {"messageType": "CALL"}],
)
async def test_outbound_and_calls_are_ignored(
    repository: InMemoryRepository, clock: FakeClock, overrides: dict
) -> None:
    payload = {"messageId": "m", "conversationId": "conv-1", **overrides}

    result = await _service(repository, clock).handle_webhook(payload)

    assert result.status == "ignored"
    assert repository.messages == {}


@pytest.mark.asyncio
async def test_missing_identifiers_raise(repository: InMemoryRepository, clock: FakeClock) -> None:
    with pytest.raises(MissingIdentifiersError, match="locationId, contactId"):
        await _service(repository, clock).handle_webhook({"messageId": "m", "conversationId": "c"})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("conversation_id", "location_id"),
    [("conv-off", "loc-crm"), ("conv-1", "loc-desconhecida")],
)
async def test_disabled_paths_store_nothing(
    repository: InMemoryRepository, clock: FakeClock, conversation_id: str, location_id: str
) -> None:
    repository.conversations["conv-off"] = False
    payload = {
        "messageId": "m",
        "conversationId": conversation_id,
        "locationId": location_id,
        "contactId": "contact-1",
    }

    result = await _service(repository, clock).handle_webhook(payload)

    assert result.status == "disabled"
    assert repository.messages == {}
    assert repository.batches == {}


@pytest.mark.asyncio
async def test_location_without_active_agent_is_disabled(
    repository: InMemoryRepository, clock: FakeClock
) -> None:
    repository.agents["agent-1"].is_active = False
    payload = {
        "messageId": "m",
        "conversationId": "conv-1",
        "locationId": "loc-crm",
        "contactId": "contact-1",
    }

    result = await _service(repository, clock).handle_webhook(payload)

    assert result.status == "disabled"
