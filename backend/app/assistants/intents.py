"""Respostas determinísticas para intenções sensíveis.

Perguntas sobre empresa e endereço do cadastro, e pedidos de alteração da
empresa, são resolvidos sem passar pelo modelo. As regras formam uma cadeia
ordenada de pares predicado/handler; a primeira que casa produz a resposta.
Quando nenhuma casa, o batch segue para o loop de geração.
"""

from __future__ import annotations

import json
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from app.assistants.tools import MANAGE_CONTACT, ToolDispatcher
from app.core.logging import get_logger
from app.services.ghl import CrmClient, CrmError
from app.services.trace import DecisionTrace

logger = get_logger(__name__)

SNAPSHOT_MAX_CHARS = 3500

PREFETCH_FAILED_REPLY = (
    "No momento não consegui acessar as informações do seu cadastro. "
    "Por favor, tente novamente em alguns minutos."
)
COMPANY_ASK_NAME_REPLY = (
    "Entendi. Para eu atualizar a empresa no seu cadastro, me diga o nome exato da empresa."
)
COMPANY_UPDATED_REPLY = "Pronto — atualizei a empresa no seu cadastro para: *{company}*."
COMPANY_UPDATE_FAILED_REPLY = (
    "No momento não consegui atualizar a empresa no seu cadastro. "
    "Por favor, tente novamente em alguns minutos."
)
COMPANY_CORRECTION_REPLY = (
    "Perfeito — entendi. A empresa correta é *{company}*.\n\n"
    "Quer que eu atualize a empresa cadastrada no seu cadastro para *{company}*?"
)
COMPANY_CORRECTION_UNCLEAR_REPLY = (
    "Entendi. No momento não consegui identificar com segurança qual é a empresa correta "
    "para atualizar. Você pode me confirmar o nome completo da empresa?"
)
COMPANY_ANSWER_REPLY = (
    "A empresa cadastrada no seu cadastro é: *{company}*.\n\n"
    "Se quiser, posso atualizar para a empresa correta — me diga o nome exato."
)
COMPANY_UNAVAILABLE_REPLY = (
    "No momento não consegui acessar a empresa cadastrada no seu cadastro. "
    "Por favor, tente novamente em alguns minutos."
)
ADDRESS_UNAVAILABLE_REPLY = (
    "No momento não consegui acessar o endereço do seu cadastro. "
    "Por favor, tente novamente em alguns minutos."
)
ADDRESS_MISSING_REPLY = "No momento não encontrei endereço cadastrado no seu cadastro."
INTERNAL_ID_SAFE_REPLY = (
    "No momento não consegui acessar essa informação com segurança. "
    "Por favor, tente novamente em alguns minutos."
)

_SNAPSHOT_KEYWORDS = (
    "processo", "andamento", "status", "etapa", "funil", "pipeline", "proposta",
    "orçamento", "orcamento", "empresa", "cadastro", "cadastrada", "cadastrado",
    "valor", "valores", "preço", "preco", "fase",
    "meu cadastro", "meus dados", "dados", "informações", "informacoes",
    "email", "e-mail", "telefone", "celular", "endereço", "endereco", "nome",
)
_COMPANY_QUESTION_HINTS = ("cadastr", "trabalho", "registr")
_COMPANY_UPDATE_VERBS = (
    "alter", "atualiz", "muda", "troca", "corrig", "coloc", "seta",
)
_LEGAL_SUFFIX_RE = re.compile(r"\b(?:ltda|s/a|sa|me|eireli|inc|llc)\b", re.IGNORECASE)
_ADDRESS_RE = re.compile(
    r"\b(?:endere[cç]|rua|cep|bairro|cidade|estado|ufs?\b|pa[ií]s)", re.IGNORECASE
)
_INTERNAL_ID_RE = re.compile(
    r"\bid\s+d[oa](?:\s+\w+){0,3}\s+(?:contato|conversa)\b"
    r"|\bc[oó]digo\s+d[oa](?:\s+\w+){0,3}\s+(?:contato|conversa)\b"
    r"|\bcontact\s*id\b"
    r"|\bconversation\s*id\b",
    re.IGNORECASE,
)
_UPDATE_TARGET_RE = re.compile(r"\b(?:para|pra|p/)\s+(.+)$", re.IGNORECASE)

_COMPANY_KEYS = ("companyName", "businessName", "company", "business_name", "company_name")
_ADDRESS_LABELS = (
    ("street", "Rua"),
    ("address2", "Complemento"),
    ("city", "Cidade"),
    ("state", "Estado"),
    ("postalCode", "CEP"),
    ("country", "País"),
)
_ADDRESS_REQUIRED = (("street", "Rua"), ("state", "Estado"), ("postalCode", "CEP"), ("country", "País"))


# Classificação ---------------------------------------------------------------


def mentions_internal_id(text: str) -> bool:
    return bool(_INTERNAL_ID_RE.search(text or ""))


def wants_contact_snapshot(text: str) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in _SNAPSHOT_KEYWORDS)


def is_company_question(text: str) -> bool:
    lowered = (text or "").lower()
    return "empresa" in lowered and any(hint in lowered for hint in _COMPANY_QUESTION_HINTS)


def is_company_correction(text: str) -> bool:
    lowered = (text or "").lower()
    if "não é" not in lowered and "nao e" not in lowered:
        return False
    if " é " not in lowered and " e " not in lowered:
        return False
    return bool(_LEGAL_SUFFIX_RE.search(lowered)) or "empresa" in lowered


def is_company_update(text: str) -> bool:
    lowered = (text or "").lower()
    return "empresa" in lowered and any(verb in lowered for verb in _COMPANY_UPDATE_VERBS)


def is_address_question(text: str) -> bool:
    return bool(_ADDRESS_RE.search(text or ""))


@dataclass(slots=True, frozen=True)
class IntentFlags:
    wants_contact_snapshot: bool = False
    company_question: bool = False
    company_correction: bool = False
    company_update: bool = False
    address_question: bool = False
    internal_id_request: bool = False

    def as_trace(self) -> dict[str, bool]:
        return {
            "keywordWantsContactSnapshot": self.wants_contact_snapshot,
            "isCompanyQuestion": self.company_question,
            "isAddressQuestion": self.address_question,
        }


def classify(text: str) -> IntentFlags:
    return IntentFlags(
        wants_contact_snapshot=wants_contact_snapshot(text),
        company_question=is_company_question(text),
        company_correction=is_company_correction(text),
        company_update=is_company_update(text),
        address_question=is_address_question(text),
        internal_id_request=mentions_internal_id(text),
    )


def extract_update_target(text: str) -> str:
    match = _UPDATE_TARGET_RE.search((text or "").strip())
    if not match:
        return ""
    return re.sub(r"[?!\s]+$", "", match.group(1)).strip()


def extract_corrected_company(text: str) -> str:
    raw = (text or "").strip()
    lowered = raw.lower()
    index = max(lowered.rfind(" é "), lowered.rfind(" e "))
    if index < 0:
        return ""
    return re.sub(r"^[.:\-\s]+", "", raw[index + 3:]).strip()


# Snapshot do contato -----------------------------------------------------------


def _contact_body(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    for key in ("contact", "data"):
        if isinstance(payload.get(key), dict):
            return payload[key]
    return payload


def extract_company(payload: Any) -> str:
    contact = _contact_body(payload)
    for key in _COMPANY_KEYS:
        value = contact.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def extract_address(payload: Any) -> dict[str, str]:
    contact = _contact_body(payload)

    def pick(*keys: str) -> str:
        for key in keys:
            value = contact.get(key)
            if value:
                return str(value).strip()
        return ""

    return {
        "street": pick("street", "address1", "address_1", "address"),
        "address2": pick("address2", "address_2"),
        "city": pick("city"),
        "state": pick("state"),
        "postalCode": pick("postalCode", "postal_code", "zip"),
        "country": pick("country"),
    }


def short_json(value: Any, max_len: int = SNAPSHOT_MAX_CHARS) -> str:
    try:
        text = json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return ""
    if len(text) <= max_len:
        return text
    return text[:max_len] + "...(truncated)"


@dataclass(slots=True)
class ContactSnapshot:
    ok: bool = False
    status: int | None = None
    company: str = ""
    address: dict[str, str] = field(default_factory=dict)
    raw: Any = None

    @property
    def attempted(self) -> bool:
        return self.raw is not None or self.status is not None

    def prompt_block(self) -> str:
        if not self.attempted:
            return ""
        return (
            "[Dados do contato (sistema) - não mencionar ao usuário]\n"
            f"{short_json(self.raw if self.raw is not None else {})}"
        )


async def prefetch_contact(
    crm: CrmClient, token: str, contact_id: str, trace: DecisionTrace
) -> ContactSnapshot:
    """Lê o contato para dar base factual às respostas; falhas não interrompem o batch."""
    try:
        response = await crm.get_contact(token, contact_id)
    except CrmError as exc:
        trace.add("ghl_contact_prefetch", ok=False, error=str(exc))
        return ContactSnapshot()

    payload = response.payload if response.ok else {}
    snapshot = ContactSnapshot(
        ok=response.ok,
        status=response.status,
        company=extract_company(payload),
        address=extract_address(payload),
        raw=payload,
    )
    trace.add(
        "ghl_contact_prefetch",
        ok=snapshot.ok,
        status=snapshot.status,
        company=snapshot.company or None,
        note="company_field_found" if snapshot.company else "company_field_missing",
        address_fields_present={key: bool(value) for key, value in snapshot.address.items()},
    )
    return snapshot


# Cadeia de regras ------------------------------------------------------------


@dataclass(slots=True)
class IntentContext:
    text: str
    flags: IntentFlags
    snapshot: ContactSnapshot
    trace: DecisionTrace
    dispatcher: ToolDispatcher


Predicate = Callable[[IntentContext], bool]
Handler = Callable[[IntentContext], Awaitable[str]]


@dataclass(slots=True, frozen=True)
class IntentRule:
    name: str
    matches: Predicate
    handle: Handler


async def _prefetch_failed(ctx: IntentContext) -> str:
    ctx.trace.decision("prefetch_required_but_failed", ok=False)
    return PREFETCH_FAILED_REPLY


async def _update_company(ctx: IntentContext) -> str:
    target = extract_update_target(ctx.text)
    ctx.trace.decision("company_update_request_detected", targetCompany=target or None)
    if not target:
        return COMPANY_ASK_NAME_REPLY

    args, _ = ctx.dispatcher.autofill(MANAGE_CONTACT, {"updates": {"companyName": target}})
    result = await ctx.dispatcher.dispatch(MANAGE_CONTACT, args)
    ctx.trace.tool_call(MANAGE_CONTACT, ok=result.ok, status=result.status, error=result.error)
    if result.ok:
        return COMPANY_UPDATED_REPLY.format(company=target)
    return COMPANY_UPDATE_FAILED_REPLY


async def _correct_company(ctx: IntentContext) -> str:
    corrected = extract_corrected_company(ctx.text)
    ctx.trace.decision("company_correction_detected", corrected=corrected or None)
    if corrected:
        return COMPANY_CORRECTION_REPLY.format(company=corrected)
    return COMPANY_CORRECTION_UNCLEAR_REPLY


async def _answer_company(ctx: IntentContext) -> str:
    company = ctx.snapshot.company
    if company:
        ctx.trace.decision("answer_company_deterministic", ok=True)
        return COMPANY_ANSWER_REPLY.format(company=company)
    ctx.trace.decision(
        "answer_company_deterministic",
        ok=False,
        reason="company_field_missing_or_prefetch_failed",
    )
    return COMPANY_UNAVAILABLE_REPLY


async def _answer_address(ctx: IntentContext) -> str:
    if not ctx.snapshot.ok:
        ctx.trace.decision("answer_address_deterministic", ok=False, reason="prefetch_failed")
        return ADDRESS_UNAVAILABLE_REPLY

    address = ctx.snapshot.address
    lines = [f"- *{label}*: {address[key]}" for key, label in _ADDRESS_LABELS if address.get(key)]
    ctx.trace.decision("answer_address_deterministic", ok=bool(lines))
    if not lines:
        return ADDRESS_MISSING_REPLY

    reply = "No seu cadastro, eu tenho estas informações de endereço:\n" + "\n".join(lines)
    missing = [label for key, label in _ADDRESS_REQUIRED if not address.get(key)]
    if missing:
        reply += f"\n\nAinda não tenho: {', '.join(missing)}."
    return reply


DEFAULT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        "prefetch_failed",
        lambda ctx: ctx.flags.wants_contact_snapshot
        and not ctx.snapshot.ok
        and not ctx.flags.company_correction,
        _prefetch_failed,
    ),
    IntentRule("company_update", lambda ctx: ctx.flags.company_update, _update_company),
    IntentRule("company_correction", lambda ctx: ctx.flags.company_correction, _correct_company),
    IntentRule("company_question", lambda ctx: ctx.flags.company_question, _answer_company),
    IntentRule("address_question", lambda ctx: ctx.flags.address_question, _answer_address),
)


class IntentRouter:
    def __init__(self, rules: Sequence[IntentRule] = DEFAULT_RULES) -> None:
        self._rules = tuple(rules)

    async def resolve(self, ctx: IntentContext) -> str | None:
        for rule in self._rules:
            if rule.matches(ctx):
                logger.info("intents.matched", extra={"rule": rule.name})
                return await rule.handle(ctx)
        return None


def scrub_internal_ids(reply: str, trace: DecisionTrace | None = None) -> str:
    """Troca a resposta inteira por uma mensagem segura se ela citar IDs internos."""
    if not mentions_internal_id(reply):
        return reply
    if trace is not None:
        trace.decision("blocked_internal_id_request", ok=True)
    return INTERNAL_ID_SAFE_REPLY
