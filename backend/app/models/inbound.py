"""Modelos das tabelas do pipeline de mensagens recebidas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

JobStatus = Literal["pending", "processing", "completed", "error", "skipped"]
BatchStatus = Literal["pending", "processing", "completed", "error"]
ContentType = Literal["faq", "chunk"]


class Row(BaseModel):
    """Base das linhas lidas do Supabase; ignora colunas desconhecidas."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class InboundMessage(Row):
    """Uma entrega bruta do webhook. Imutável depois de gravada."""

    message_id: str
    location_id: str
    contact_id: str
    conversation_id: str
    body: str = ""
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    agent_id: str | None = None
    message_type: str | None = None
    conversation_provider_id: str | None = None
    created_at: datetime | None = None


class ConversationBatch(Row):
    """Janela de debounce de uma conversa."""

    id: str
    conversation_id: str
    status: BatchStatus = "pending"
    scheduled_at: datetime
    locked_at: datetime | None = None


class InboundJob(Row):
    """Uma mensagem enfileirada para processamento dentro de um batch."""

    id: str | None = None
    message_id: str
    agent_id: str
    location_id: str
    contact_id: str
    conversation_id: str
    batch_id: str
    status: JobStatus = "pending"
    message_text: str = ""
    scheduled_at: datetime | None = None
    knowledge_base_ids: list[str] = Field(default_factory=list)
    message_type: str | None = None
    conversation_provider_id: str | None = None
    response_text: str | None = None
    context_sources: list[dict[str, Any]] | None = None
    error_message: str | None = None
    created_at: datetime | None = None


class Agent(Row):
    """Persona configurada para uma location (somente leitura aqui)."""

    id: str
    location_id: str | None = None
    name: str | None = None
    personality: str | None = None
    objective: str | None = None
    additional_info: str | None = None
    system_prompt: str | None = None
    is_active: bool = False


class KnowledgeItem(Row):
    """Unidade recuperável de uma base de conhecimento."""

    id: str | None = None
    content: str = ""
    content_type: str = "chunk"
    title: str | None = None
    url: str | None = None
    knowledge_base_id: str | None = None
    similarity: float | None = None
