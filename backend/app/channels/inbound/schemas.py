"""Esquemas do webhook de mensagens recebidas do CRM.

O provedor pode entregar a mensagem dentro de envelopes (`[{body: {...}}]` ou
`{body: {...}}`). A decodificação aplica uma lista ordenada de matchers de
formato até o payload parar de mudar.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.core.clock import parse_timestamp, utcnow

_MAX_UNWRAP_DEPTH = 5
_MESSAGE_MARKERS = ("type", "messageId", "messageType", "conversationId")

Matcher = Callable[[Any], Any]


def _list_envelope(value: Any) -> Any | None:
    if not isinstance(value, list):
        return None
    if not value:
        return {}
    first = value[0]
    if isinstance(first, dict) and isinstance(first.get("body"), dict):
        return first["body"]
    return first


def _body_envelope(value: Any) -> Any | None:
    if not isinstance(value, dict):
        return None
    inner = value.get("body")
    if isinstance(inner, dict) and any(inner.get(marker) for marker in _MESSAGE_MARKERS):
        return inner
    return None


ENVELOPE_MATCHERS: tuple[Matcher, ...] = (_list_envelope, _body_envelope)


def unwrap_envelope(payload: Any) -> dict[str, Any]:
    """Retorna o objeto canônico da mensagem (ou `{}` se o formato for irreconhecível)."""
    current = payload
    for _ in range(_MAX_UNWRAP_DEPTH):
        for matcher in ENVELOPE_MATCHERS:
            unwrapped = matcher(current)
            if unwrapped is not None:
                current = unwrapped
                break
        else:
            break
    return current if isinstance(current, dict) else {}


def _pick(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return str(value)
    return None


def _body_text(payload: dict[str, Any]) -> str:
    body = payload.get("body")
    if isinstance(body, str):
        return body
    if isinstance(body, dict) and isinstance(body.get("body"), str):
        return body["body"]
    return ""


class WebhookMessage(BaseModel):
    """Mensagem canônica extraída do webhook."""

    message_id: str
    conversation_id: str | None = None
    location_id: str | None = None
    contact_id: str | None = None
    direction: str | None = None
    message_type: str | None = None
    conversation_provider_id: str | None = None
    body: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, now: datetime | None = None) -> "WebhookMessage":
        conversation_id = _pick(payload, "conversationId", "conversation_id")
        message_id = _pick(payload, "messageId", "message_id", "webhookId", "webhook_id")
        if not message_id:
            # Sem ID explícito, a chave de deduplicação deriva da conversa e do horário.
            moment = _pick(payload, "dateAdded", "timestamp")
            if not moment:
                stamp = parse_timestamp(now) or utcnow()
                moment = str(int(stamp.timestamp() * 1000))
            message_id = f"{conversation_id or 'unknown'}:{moment}"

        return cls(
            message_id=message_id,
            conversation_id=conversation_id,
            location_id=_pick(payload, "locationId", "location_id"),
            contact_id=_pick(payload, "contactId", "contact_id"),
            direction=_pick(payload, "direction"),
            message_type=_pick(payload, "messageType", "message_type", "type"),
            conversation_provider_id=_pick(
                payload, "conversationProviderId", "conversation_provider_id"
            ),
            body=_body_text(payload),
            raw=payload,
        )

    @property
    def is_inbound(self) -> bool:
        return self.direction is None or self.direction.lower() == "inbound"

    @property
    def is_call(self) -> bool:
        return (self.message_type or "").upper() == "CALL"

    def missing_identifiers(self) -> list[str]:
        required = {
            "conversationId": self.conversation_id,
            "locationId": self.location_id,
            "contactId": self.contact_id,
        }
        return [name for name, value in required.items() if not value]


class WebhookResponse(BaseModel):
    """Resposta 200 do webhook; `status` indica o caminho tomado."""

    status: str
    batch_id: str | None = None
