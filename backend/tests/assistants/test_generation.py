import json

import httpx
import pytest

from app.assistants.generation import FALLBACK_REPLY, EMPTY_REPLY, GenerationEngine
from app.assistants.tools import GET_CONTACT, ToolContext, ToolDispatcher
from app.core.config import Settings
from app.services.gemini import GeminiClient, GenerationError, parse_turn
from app.services.ghl import CrmClient
from app.services.trace import DecisionTrace


def _function_call(name: str, args: dict | None = None) -> dict:
    return {
        "candidates": [
            {"content": {"role": "model", "parts": [{"functionCall": {"name": name, "args": args or {}}}]}}
        ]
    }


def _text(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class GeminiScript:
    """Handler do MockTransport que responde a sequência de payloads."""

    def __init__(self, *payloads: dict) -> None:
        self.payloads = list(payloads)
        self.bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return httpx.Response(200, json=self.payloads.pop(0))


def _crm_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/contacts/contact-1":
        return httpx.Response(200, json={"contact": {"id": "contact-1", "companyName": "Acme"}})
    return httpx.Response(404, json={})


def _dispatcher() -> ToolDispatcher:
    crm = CrmClient(transport=httpx.MockTransport(_crm_handler))
    return ToolDispatcher(crm, "tok", ToolContext("loc-1", "contact-1", "conv-1"))


def _engine(script: GeminiScript, **kwargs) -> GenerationEngine:
    settings = Settings(gemini_api_key="test-key")
    client = GeminiClient(settings, transport=httpx.MockTransport(script))
    return GenerationEngine(client, **kwargs)


async def _run(engine: GenerationEngine, trace: DecisionTrace) -> str:
    return await engine.run(
        system_prompt="Você é a Ana.",
        user_parts=[{"text": "Oi"}],
        dispatcher=_dispatcher(),
        trace=trace,
    )


@pytest.mark.asyncio
async def test_tool_call_result_is_fed_back_to_the_model() -> None:
    script = GeminiScript(_function_call(GET_CONTACT), _text("Sua empresa é Acme."))
    trace = DecisionTrace()

    reply = await _run(_engine(script), trace)

    assert reply == "Sua empresa é Acme."
    first, second = script.bodies
    assert first["systemInstruction"] == {"parts": [{"text": "Você é a Ana."}]}
    assert first["tools"][0]["function_declarations"]
    roles = [content["role"] for content in second["contents"]]
    assert roles == ["user", "model", "function"]
    response = second["contents"][2]["parts"][0]["functionResponse"]
    assert response["name"] == GET_CONTACT
    assert response["response"]["content"]["contact"]["companyName"] == "Acme"

    autofill = [event for event in trace if event.get("step") == "tool_autofill"]
    assert autofill[0]["autofilled"] == ["locationId", "contactId"]
    tool_calls = [event for event in trace if event["source"] == "tool_call"]
    assert [(event["name"], event["ok"], event["status"]) for event in tool_calls] == [
        (GET_CONTACT, True, 200)
    ]


@pytest.mark.asyncio
async def test_round_budget_exhaustion_returns_fallback() -> None:
    script = GeminiScript(*[_function_call(GET_CONTACT) for _ in range(3)])
    trace = DecisionTrace()

    reply = await _run(_engine(script, max_rounds=3), trace)

    assert reply == FALLBACK_REPLY
    assert len(script.bodies) == 3
    assert trace.steps()[-1] == "tool_round_budget_exhausted"


@pytest.mark.asyncio
async def test_empty_text_uses_default_reply() -> None:
    script = GeminiScript({"candidates": []})

    assert await _run(_engine(script), DecisionTrace()) == EMPTY_REPLY


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_back_as_error() -> None:
    script = GeminiScript(_function_call("delete_everything"), _text("Não posso fazer isso."))
    trace = DecisionTrace()

    reply = await _run(_engine(script), trace)

    assert reply == "Não posso fazer isso."
    response = script.bodies[1]["contents"][2]["parts"][0]["functionResponse"]
    assert response["response"]["content"] == {"error": "Tool not implemented"}


@pytest.mark.asyncio
async def test_http_error_from_model_raises() -> None:
    settings = Settings(gemini_api_key="test-key")
    client = GeminiClient(
        settings,
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="overloaded")),
    )

    with pytest.raises(GenerationError, match="Gemini API error: 503"):
        await client.generate([{"role": "user", "parts": [{"text": "Oi"}]}])


@pytest.mark.asyncio
async def test_missing_api_key_raises() -> None:
    client = GeminiClient(Settings(gemini_api_key=None))

    with pytest.raises(GenerationError):
        await client.generate([])


def test_parse_turn_prefers_function_call() -> None:
    turn = parse_turn(_function_call(GET_CONTACT, {"contactId": "contact-1"}))

    assert turn.function_call is not None
    assert turn.function_call.args == {"contactId": "contact-1"}
    assert turn.text is None
    assert parse_turn(None).text is None
