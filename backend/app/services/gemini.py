"""Cliente da API REST `generateContent` do Gemini."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.config import Settings, settings as default_settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class GenerationError(RuntimeError):
    """Falha ao chamar o modelo generativo."""


@dataclass(slots=True)
class FunctionCall:
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class GenerationTurn:
    """Primeira parte do primeiro candidato: chamada de função ou texto."""

    content: dict[str, Any]
    function_call: FunctionCall | None = None
    text: str | None = None


def parse_turn(payload: Any) -> GenerationTurn:
    candidates = payload.get("candidates") if isinstance(payload, dict) else None
    candidate = candidates[0] if isinstance(candidates, list) and candidates else {}
    content = candidate.get("content") if isinstance(candidate, dict) else None
    if not isinstance(content, dict):
        content = {"role": "model", "parts": []}
    parts = content.get("parts") if isinstance(content.get("parts"), list) else []
    part = parts[0] if parts and isinstance(parts[0], dict) else {}

    call = part.get("functionCall")
    if isinstance(call, dict) and call.get("name"):
        args = call.get("args") if isinstance(call.get("args"), dict) else {}
        return GenerationTurn(
            content=content, function_call=FunctionCall(name=str(call["name"]), args=dict(args))
        )

    text = part.get("text")
    return GenerationTurn(content=content, text=text if isinstance(text, str) else None)


class GeminiClient:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._transport = transport

    async def generate(
        self,
        contents: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        system_instruction: str | None = None,
    ) -> GenerationTurn:
        if not self._settings.gemini_api_key:
            raise GenerationError("GEMINI_API_KEY is not configured")

        body: dict[str, Any] = {"contents": contents}
        if tools:
            body["tools"] = tools
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        url = (
            f"{self._settings.gemini_api_url.rstrip('/')}/models/"
            f"{self._settings.gemini_model}:generateContent"
        )
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.gemini_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    url, params={"key": self._settings.gemini_api_key}, json=body
                )
        except httpx.RequestError as exc:
            logger.exception("gemini.request_failed", extra={"error": str(exc)})
            raise GenerationError(f"Gemini API network error: {exc}") from exc

        if response.status_code >= 400:
            raise GenerationError(f"Gemini API error: {response.status_code} - {response.text}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise GenerationError(f"Gemini API returned invalid JSON: {response.text!r}") from exc
        return parse_turn(payload)
