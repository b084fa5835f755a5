"""Ferramentas do CRM expostas ao modelo e o despacho das chamadas."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.core.logging import get_logger
from app.services.ghl import CrmClient, CrmError, CrmResponse

logger = get_logger(__name__)

GET_CUSTOM_FIELDS = "ghl_get_custom_fields"
MANAGE_CONTACT = "ghl_manage_contact"
GET_CONVERSATION = "ghl_get_conversation"
GET_CONTACT = "ghl_get_contact"

_AUTOFILL_NOTE = "Se {keys} não forem informados, o backend preencherá automaticamente."

TOOL_DECLARATIONS: list[dict[str, Any]] = [
    {
        "function_declarations": [
            {
                "name": GET_CUSTOM_FIELDS,
                "description": (
                    "Busca a lista de campos personalizados (custom fields) disponíveis na "
                    "GoHighLevel para contatos ou oportunidades. "
                    + _AUTOFILL_NOTE.format(keys="locationId")
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "locationId": {"type": "string", "description": "O ID da location na GHL"},
                        "model": {
                            "type": "string",
                            "enum": ["contact", "opportunity"],
                            "description": "O modelo de dados para buscar os campos",
                        },
                    },
                    "required": [],
                },
            },
            {
                "name": MANAGE_CONTACT,
                "description": (
                    "Ferramenta central para gerenciar contatos na GHL. Pode atualizar dados "
                    "básicos, campos personalizados, adicionar/remover tags, criar notas e inserir "
                    "em workflows, tudo em uma única chamada. "
                    + _AUTOFILL_NOTE.format(keys="locationId/contactId")
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "locationId": {"type": "string"},
                        "contactId": {"type": "string"},
                        "updates": {
                            "type": "object",
                            "description": (
                                "Campos para atualizar (firstName, lastName, name, email, phone, "
                                "businessName/companyName/company, endereço, customFields)."
                            ),
                            "properties": {
                                "firstName": {"type": "string"},
                                "lastName": {"type": "string"},
                                "name": {"type": "string"},
                                "email": {"type": "string"},
                                "phone": {"type": "string"},
                                "businessName": {"type": "string"},
                                "companyName": {"type": "string"},
                                "company": {"type": "string"},
                                "address1": {"type": "string"},
                                "address2": {"type": "string"},
                                "city": {"type": "string"},
                                "state": {"type": "string"},
                                "postalCode": {"type": "string"},
                                "country": {"type": "string"},
                                "customFields": {
                                    "type": "array",
                                    "items": {
                                        "type": "object",
                                        "properties": {
                                            "id": {"type": "string", "description": "O ID único do campo"},
                                            "field_value": {
                                                "type": "string",
                                                "description": "O valor a ser gravado",
                                            },
                                        },
                                        "required": ["id", "field_value"],
                                    },
                                },
                            },
                        },
                        "tags": {"type": "array", "items": {"type": "string"}},
                        "removeTags": {"type": "array", "items": {"type": "string"}},
                        "notes": {"type": "array", "items": {"type": "string"}},
                        "workflowId": {"type": "string"},
                    },
                    "required": [],
                },
            },
            {
                "name": GET_CONVERSATION,
                "description": (
                    "Obtém os detalhes técnicos de uma conversa específica (status, participantes, "
                    "etc). " + _AUTOFILL_NOTE.format(keys="locationId/conversationId")
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "locationId": {"type": "string"},
                        "conversationId": {"type": "string"},
                    },
                    "required": [],
                },
            },
            {
                "name": GET_CONTACT,
                "description": (
                    "Obtém os detalhes do contato na GoHighLevel (inclui campos e custom fields). "
                    + _AUTOFILL_NOTE.format(keys="locationId/contactId")
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "locationId": {"type": "string"},
                        "contactId": {"type": "string"},
                    },
                    "required": [],
                },
            },
        ]
    }
]

AUTOFILL: dict[str, tuple[str, ...]] = {
    GET_CUSTOM_FIELDS: ("locationId",),
    MANAGE_CONTACT: ("locationId", "contactId"),
    GET_CONVERSATION: ("locationId", "conversationId"),
    GET_CONTACT: ("locationId", "contactId"),
}

CONTACT_UPDATE_FIELDS = (
    "firstName",
    "lastName",
    "name",
    "email",
    "phone",
    "businessName",
    "companyName",
    "company",
    "address1",
    "address2",
    "city",
    "state",
    "postalCode",
    "country",
)


@dataclass(slots=True)
class ToolContext:
    """IDs conhecidos do batch; o modelo nunca é a fonte desses valores."""

    location_id: str
    contact_id: str
    conversation_id: str

    def value_for(self, key: str) -> str:
        return {
            "locationId": self.location_id,
            "contactId": self.contact_id,
            "conversationId": self.conversation_id,
        }[key]


@dataclass(slots=True)
class ToolResult:
    ok: bool
    status: int | None = None
    payload: Any = field(default_factory=dict)
    error: str | None = None


def build_contact_update(updates: dict[str, Any]) -> dict[str, Any]:
    """Campos nativos permitidos + `customFields` no formato `{id, value}` do CRM."""
    body = {key: updates[key] for key in CONTACT_UPDATE_FIELDS if updates.get(key)}
    custom_fields = updates.get("customFields")
    if isinstance(custom_fields, list):
        body["customFields"] = [
            {"id": item.get("id"), "value": item.get("field_value")}
            for item in custom_fields
            if isinstance(item, dict)
        ]
    return body


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item]


class ToolDispatcher:
    def __init__(self, crm: CrmClient, token: str, context: ToolContext) -> None:
        self._crm = crm
        self._token = token
        self._context = context

    def autofill(self, name: str, args: dict[str, Any] | None) -> tuple[dict[str, Any], list[str]]:
        filled_args = dict(args or {})
        filled: list[str] = []
        for key in AUTOFILL.get(name, ()):
            if not filled_args.get(key):
                filled_args[key] = self._context.value_for(key)
                filled.append(key)
        return filled_args, filled

    async def dispatch(self, name: str, args: dict[str, Any]) -> ToolResult:
        if name not in AUTOFILL:
            return ToolResult(ok=False, payload={"error": "Tool not implemented"}, error="not_implemented")

        for key in AUTOFILL[name]:
            value = str(args.get(key) or "")
            if value and value != self._context.value_for(key):
                logger.warning(
                    "tools.context_mismatch",
                    extra={"tool": name, "key": key, "received": value},
                )
                message = f"{key} não corresponde à conversa ativa"
                return ToolResult(ok=False, payload={"error": message}, error="context_mismatch")

        try:
            if name == GET_CUSTOM_FIELDS:
                return _from_response(
                    await self._crm.get_custom_fields(
                        self._token, self._context.location_id, args.get("model")
                    )
                )
            if name == GET_CONVERSATION:
                return _from_response(
                    await self._crm.get_conversation(self._token, self._context.conversation_id)
                )
            if name == GET_CONTACT:
                return _from_response(
                    await self._crm.get_contact(self._token, self._context.contact_id)
                )
            return await self._manage_contact(args)
        except CrmError as exc:
            return ToolResult(
                ok=False,
                payload={"error": f"Failed to call tool function: {exc}"},
                error=str(exc),
            )

    async def _manage_contact(self, args: dict[str, Any]) -> ToolResult:
        contact_id = self._context.contact_id
        steps: list[tuple[str, CrmResponse]] = []
        results: dict[str, Any] = {}

        updates = args.get("updates")
        if isinstance(updates, dict) and updates:
            response = await self._crm.update_contact(
                self._token, contact_id, build_contact_update(updates)
            )
            steps.append(("updateContact", response))
            results["updateContact"] = response.payload

        tags = _string_list(args.get("tags"))
        if tags:
            response = await self._crm.add_tags(self._token, contact_id, tags)
            steps.append(("addTags", response))
            results["addTags"] = response.payload

        remove_tags = _string_list(args.get("removeTags"))
        if remove_tags:
            response = await self._crm.remove_tags(self._token, contact_id, remove_tags)
            steps.append(("removeTags", response))
            results["removeTags"] = response.payload

        notes = _string_list(args.get("notes"))
        if notes:
            results["notes"] = []
            for note in notes:
                response = await self._crm.add_note(self._token, contact_id, note)
                steps.append(("notes", response))
                results["notes"].append(response.payload)

        workflow_id = args.get("workflowId")
        if workflow_id:
            response = await self._crm.add_to_workflow(self._token, contact_id, str(workflow_id))
            steps.append(("workflow", response))
            results["workflow"] = response.payload

        failed = [(label, response) for label, response in steps if not response.ok]
        if failed:
            label, response = failed[0]
            return ToolResult(
                ok=False, status=response.status, payload=results, error=f"{label}_failed"
            )
        status = steps[-1][1].status if steps else 200
        return ToolResult(ok=True, status=status, payload=results)


def _from_response(response: CrmResponse) -> ToolResult:
    return ToolResult(
        ok=response.ok,
        status=response.status,
        payload=response.payload,
        error=None if response.ok else f"http_{response.status}",
    )
