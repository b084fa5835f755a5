"""Recuperação de itens das bases de conhecimento do agente.

A busca tenta, em ordem: similaridade vetorial, busca textual e uma listagem
simples sem ranking. O primeiro estágio que devolver itens define o `mode`
registrado no trace.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from openai import AsyncOpenAI, OpenAIError

from app.core.config import Settings, settings as default_settings
from app.core.logging import get_logger
from app.models.inbound import KnowledgeItem
from app.services import openai as openai_service
from app.services.supabase import StorageError, SupabaseStore, in_

logger = get_logger(__name__)

KB_TOP_K = 10
KB_CONTEXT_MAX = 5
KB_SIMILARITY_THRESHOLD = 0.7
CONTENT_TYPES = ("faq", "chunk")

VECTOR_RPC = "search_knowledge_items"
TEXT_RPC = "search_knowledge_items_text"

RetrievalMode = Literal["none", "vector", "text", "simple"]


def normalize_query(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float] | None: ...


class OpenAIEmbedder:
    """Embeddings `text-embedding-3-small` pelo SDK da OpenAI."""

    def __init__(self, client: AsyncOpenAI | None = None, settings: Settings | None = None) -> None:
        config = settings or default_settings
        self._client = client if client is not None else openai_service.get_embeddings_client()
        self._model = config.embedding_model

    async def embed(self, text: str) -> list[float] | None:
        clean = normalize_query(text)
        if not clean or self._client is None:
            return None
        try:
            response = await self._client.embeddings.create(
                model=self._model, input=clean, encoding_format="float"
            )
        except OpenAIError as exc:
            logger.warning("retrieval.embedding_failed", extra={"error": str(exc)})
            return None
        if not response.data:
            return None
        return list(response.data[0].embedding)


@dataclass(slots=True)
class RetrievalResult:
    items: list[KnowledgeItem] = field(default_factory=list)
    mode: RetrievalMode = "none"


class RetrievalService:
    def __init__(self, store: SupabaseStore | None = None, embedder: Embedder | None = None) -> None:
        self._store = store or SupabaseStore()
        self._embedder = embedder if embedder is not None else OpenAIEmbedder()

    async def retrieve(self, query: str, kb_ids: Sequence[str]) -> RetrievalResult:
        kb_ids = [str(kb_id) for kb_id in kb_ids if kb_id]
        if not kb_ids:
            return RetrievalResult()

        embedding = await self._embedder.embed(query)
        if embedding:
            rows = await self._search(
                VECTOR_RPC,
                {
                    "query_embedding": embedding,
                    "kb_ids": kb_ids,
                    "content_types": list(CONTENT_TYPES),
                    "top_k": KB_TOP_K,
                    "similarity_threshold": KB_SIMILARITY_THRESHOLD,
                },
            )
            if rows:
                return RetrievalResult(items=_items(rows), mode="vector")

        rows = await self._search(
            TEXT_RPC,
            {
                "query_text": normalize_query(query),
                "kb_ids": kb_ids,
                "content_types": list(CONTENT_TYPES),
                "top_k": KB_TOP_K,
            },
        )
        if rows:
            return RetrievalResult(items=_items(rows), mode="text")

        rows = await self._store.select(
            "knowledge_items",
            params={
                "select": "id,content,content_type,title,url,knowledge_base_id",
                "knowledge_base_id": in_(kb_ids),
                "content_type": in_(CONTENT_TYPES),
                "limit": str(KB_TOP_K),
            },
        )
        return RetrievalResult(items=_items(rows), mode="simple")

    async def _search(self, function: str, payload: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            result = await self._store.rpc(function, payload)
        except StorageError as exc:
            logger.warning("retrieval.rpc_failed", extra={"rpc": function, "error": str(exc)})
            return []
        if not isinstance(result, list):
            return []
        return [row for row in result if isinstance(row, dict)]


def _items(rows: list[dict[str, Any]]) -> list[KnowledgeItem]:
    return [KnowledgeItem.model_validate(row) for row in rows]


def format_knowledge_context(items: Sequence[KnowledgeItem], limit: int = KB_CONTEXT_MAX) -> str:
    blocks: list[str] = []
    for item in list(items)[:limit]:
        if item.content_type == "faq":
            blocks.append(f"Q: {item.title or item.content}\nA: {item.content}")
        elif item.url:
            blocks.append(f"{item.content}\n\nURL de referência: {item.url}")
        elif item.content:
            blocks.append(item.content)
    return "\n\n---\n\n".join(blocks)
