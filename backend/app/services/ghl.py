"""Cliente REST do CRM (GoHighLevel): conversas, mensagens e contatos."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.clock import parse_timestamp
from app.core.config import Settings, settings as default_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

HISTORY_LIMIT = 10

MESSAGE_TYPE_MAP: dict[str, str] = {
    "TYPE_SMS": "SMS",
    "TYPE_EMAIL": "Email",
    "TYPE_WHATSAPP": "WhatsApp",
    "TYPE_INSTAGRAM": "IG",
    "TYPE_FACEBOOK": "FB",
    "TYPE_GMB": "Custom",
    "TYPE_WEBCHAT": "Live_Chat",
    "Custom": "Custom",
    "SMS": "SMS",
    "Email": "Email",
    "WhatsApp": "WhatsApp",
    "IG": "IG",
    "FB": "FB",
    "Live_Chat": "Live_Chat",
}

_HISTORY_TIME_KEYS = ("dateAdded", "createdAt", "created_at", "timestamp", "date")


class CrmError(RuntimeError):
    """Falha de rede ao falar com o CRM."""


@dataclass(slots=True)
class CrmResponse:
    status: int
    payload: Any = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def map_message_type(message_type: str | None, conversation_provider_id: str | None = None) -> str:
    """Converte o tipo interno da mensagem no `type` aceito pelo envio do CRM.

    Um provider de conversa customizado força `SMS`; tipos desconhecidos passam
    sem alteração.
    """
    if conversation_provider_id:
        return "SMS"
    value = str(message_type or "")
    return MESSAGE_TYPE_MAP.get(value, value)


def extract_messages(payload: Any) -> list[dict[str, Any]]:
    """Aceita `{messages: [...]}` e `{messages: {messages: [...]}}`."""
    if not isinstance(payload, dict):
        return []
    messages = payload.get("messages")
    if isinstance(messages, list):
        return [item for item in messages if isinstance(item, dict)]
    if isinstance(messages, dict) and isinstance(messages.get("messages"), list):
        return [item for item in messages["messages"] if isinstance(item, dict)]
    return []


def _history_sort_key(message: dict[str, Any]) -> float:
    for key in _HISTORY_TIME_KEYS:
        value = message.get(key)
        if value:
            parsed = parse_timestamp(value)
            return parsed.timestamp() if parsed else 0.0
    return 0.0


def build_history(messages: Iterable[dict[str, Any]], limit: int = HISTORY_LIMIT) -> str:
    ordered = sorted(messages, key=_history_sort_key)
    lines = []
    for message in ordered[-limit:] if limit > 0 else []:
        speaker = "Usuário" if message.get("direction") == "inbound" else "Assistente"
        text = message.get("body") or message.get("message") or ""
        lines.append(f"{speaker}: {text}")
    return "\n".join(lines)


class CrmClient:
    """Chamadas autenticadas com o token da location e header `Version` fixo."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._transport = transport

    # Conversas -----------------------------------------------------------

    async def fetch_messages(self, token: str, conversation_id: str) -> list[dict[str, Any]]:
        response = await self._request(
            "GET",
            f"/conversations/{conversation_id}/messages",
            token=token,
            version=self._settings.ghl_conversations_api_version,
        )
        if not response.ok:
            logger.warning(
                "ghl.history_unavailable",
                extra={"conversation_id": conversation_id, "status": response.status},
            )
            return []
        return extract_messages(response.payload)

    async def send_message(
        self,
        token: str,
        *,
        message_type: str,
        contact_id: str,
        message: str,
        conversation_provider_id: str | None = None,
    ) -> CrmResponse:
        body: dict[str, Any] = {"type": message_type, "contactId": contact_id, "message": message}
        if conversation_provider_id:
            body["conversationProviderId"] = conversation_provider_id
        return await self._request(
            "POST",
            "/conversations/messages",
            token=token,
            version=self._settings.ghl_conversations_api_version,
            json=body,
        )

    async def get_conversation(self, token: str, conversation_id: str) -> CrmResponse:
        return await self._request(
            "GET",
            f"/conversations/{conversation_id}",
            token=token,
            version=self._settings.ghl_conversations_api_version,
        )

    # Contatos ------------------------------------------------------------

    async def get_contact(self, token: str, contact_id: str) -> CrmResponse:
        return await self._request("GET", f"/contacts/{contact_id}", token=token)

    async def update_contact(self, token: str, contact_id: str, fields: dict[str, Any]) -> CrmResponse:
        return await self._request("PUT", f"/contacts/{contact_id}", token=token, json=fields)

    async def add_tags(self, token: str, contact_id: str, tags: list[str]) -> CrmResponse:
        return await self._request(
            "POST", f"/contacts/{contact_id}/tags", token=token, json={"tags": tags}
        )

    async def remove_tags(self, token: str, contact_id: str, tags: list[str]) -> CrmResponse:
        return await self._request(
            "DELETE", f"/contacts/{contact_id}/tags", token=token, json={"tags": tags}
        )

    async def add_note(self, token: str, contact_id: str, note: str) -> CrmResponse:
        return await self._request(
            "POST", f"/contacts/{contact_id}/notes", token=token, json={"body": note}
        )

    async def add_to_workflow(self, token: str, contact_id: str, workflow_id: str) -> CrmResponse:
        return await self._request(
            "POST", f"/contacts/{contact_id}/workflow/{workflow_id}", token=token
        )

    async def get_custom_fields(
        self, token: str, location_id: str, model: str | None = None
    ) -> CrmResponse:
        return await self._request(
            "GET",
            f"/locations/{location_id}/customFields",
            token=token,
            params={"model": model or "contact"},
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        version: str | None = None,
        json: Any = None,
        params: dict[str, str] | None = None,
    ) -> CrmResponse:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Version": version or self._settings.ghl_api_version,
        }
        if json is not None:
            headers["Content-Type"] = "application/json"

        url = f"{self._settings.ghl_api_url.rstrip('/')}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.ghl_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.request(
                    method, url, headers=headers, json=json, params=params
                )
        except httpx.RequestError as exc:
            logger.exception("ghl.request_failed", extra={"path": path, "error": str(exc)})
            raise CrmError(f"Erro de rede ao acessar o CRM ({method} {path}): {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "ghl.response_error",
                extra={"path": path, "status": response.status_code, "body": response.text[:500]},
            )
        return CrmResponse(status=response.status_code, payload=_decode(response))


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}
