import json

import httpx
import pytest

from app.assistants.tools import (
    GET_CUSTOM_FIELDS,
    MANAGE_CONTACT,
    TOOL_DECLARATIONS,
    ToolContext,
    ToolDispatcher,
    build_contact_update,
)
from app.services.ghl import CrmClient


class RecordingCrm:
    def __init__(self, failing: set[tuple[str, str]] | None = None) -> None:
        self.failing = failing or set()
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if (request.method, request.url.path) in self.failing:
            return httpx.Response(422, json={"message": "invalid"})
        return httpx.Response(200, json={"path": request.url.path})


def _dispatcher(crm: RecordingCrm | None = None) -> tuple[ToolDispatcher, RecordingCrm]:
    crm = crm or RecordingCrm()
    client = CrmClient(transport=httpx.MockTransport(crm))
    return ToolDispatcher(client, "tok", ToolContext("loc-1", "contact-1", "conv-1")), crm


def test_every_declared_tool_has_no_required_ids() -> None:
    declarations = TOOL_DECLARATIONS[0]["function_declarations"]
    assert [d["name"] for d in declarations] == [
        "ghl_get_custom_fields",
        "ghl_manage_contact",
        "ghl_get_conversation",
        "ghl_get_contact",
    ]
    assert all(d["parameters"]["required"] == [] for d in declarations)


def test_autofill_only_fills_missing_ids() -> None:
    dispatcher, _ = _dispatcher()

    args, filled = dispatcher.autofill(MANAGE_CONTACT, {"contactId": "contact-1", "tags": ["vip"]})

    assert args == {"contactId": "contact-1", "locationId": "loc-1", "tags": ["vip"]}
    assert filled == ["locationId"]


def test_contact_update_keeps_whitelisted_fields_and_maps_custom_fields() -> None:
    body = build_contact_update(
        {
            "companyName": "Acme",
            "city": "Recife",
            "password": "x",
            "customFields": [{"id": "cf-1", "field_value": "azul"}],
        }
    )

    assert body == {
        "companyName": "Acme",
        "city": "Recife",
        "customFields": [{"id": "cf-1", "value": "azul"}],
    }


@pytest.mark.asyncio
async def test_manage_contact_runs_steps_in_order() -> None:
    dispatcher, crm = _dispatcher()
    args, _ = dispatcher.autofill(
        MANAGE_CONTACT,
        {
            "updates": {"email": "ana@example.com"},
            "tags": ["vip"],
            "removeTags": ["lead-frio"],
            "notes": ["ligar amanhã"],
            "workflowId": "wf-1",
        },
    )

    result = await dispatcher.dispatch(MANAGE_CONTACT, args)

    assert result.ok is True
    assert [(r.method, r.url.path) for r in crm.requests] == [
        ("PUT", "/contacts/contact-1"),
        ("POST", "/contacts/contact-1/tags"),
        ("DELETE", "/contacts/contact-1/tags"),
        ("POST", "/contacts/contact-1/notes"),
        ("POST", "/contacts/contact-1/workflow/wf-1"),
    ]
    assert json.loads(crm.requests[3].content) == {"body": "ligar amanhã"}
    assert set(result.payload) == {"updateContact", "addTags", "removeTags", "notes", "workflow"}


@pytest.mark.asyncio
async def test_manage_contact_reports_first_failed_step() -> None:
    crm = RecordingCrm(failing={("POST", "/contacts/contact-1/tags")})
    dispatcher, _ = _dispatcher(crm)

    result = await dispatcher.dispatch(
        MANAGE_CONTACT, {"updates": {"name": "Ana"}, "tags": ["vip"]}
    )

    assert result.ok is False
    assert result.status == 422
    assert result.error == "addTags_failed"


@pytest.mark.asyncio
async def test_ids_from_another_conversation_are_rejected() -> None:
    dispatcher, crm = _dispatcher()

    result = await dispatcher.dispatch(MANAGE_CONTACT, {"contactId": "other", "tags": ["x"]})

    assert result.ok is False
    assert result.error == "context_mismatch"
    assert crm.requests == []


@pytest.mark.asyncio
async def test_custom_fields_default_to_contact_model() -> None:
    dispatcher, crm = _dispatcher()

    result = await dispatcher.dispatch(GET_CUSTOM_FIELDS, {"locationId": "loc-1"})

    assert result.ok is True
    (request,) = crm.requests
    assert request.url.path == "/locations/loc-1/customFields"
    assert request.url.params["model"] == "contact"
    assert request.headers["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_network_error_becomes_error_payload() -> None:
    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    client = CrmClient(transport=httpx.MockTransport(broken))
    dispatcher = ToolDispatcher(client, "tok", ToolContext("loc-1", "contact-1", "conv-1"))

    result = await dispatcher.dispatch("ghl_get_contact", {})

    assert result.ok is False
    assert result.payload["error"].startswith("Failed to call tool function:")
