"""Repositório das tabelas de mensagens, batches e jobs via Supabase REST."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from app.core.clock import isoformat
from app.core.logging import get_logger
from app.models.inbound import (
    Agent,
    BatchStatus,
    ConversationBatch,
    InboundJob,
    InboundMessage,
    JobStatus,
)
from app.services.supabase import SupabaseStore, eq, in_

logger = get_logger(__name__)

LOCK_RPC = "acquire_specific_batch_lock"


class InboundRepository:
    """Consultas de domínio sobre o store usadas pela ingestão e pelo runner."""

    def __init__(self, store: SupabaseStore | None = None) -> None:
        self._store = store or SupabaseStore()

    # Mensagens ------------------------------------------------------------

    async def message_exists(self, message_id: str) -> bool:
        rows = await self._store.select(
            "inbound_messages",
            params={"select": "id", "message_id": eq(message_id), "limit": "1"},
        )
        return bool(rows)

    async def insert_message(self, message: InboundMessage) -> None:
        await self._store.insert("inbound_messages", message.to_row())

    async def fetch_messages(self, message_ids: Iterable[str]) -> list[InboundMessage]:
        ids = [message_id for message_id in message_ids if message_id]
        if not ids:
            return []
        rows = await self._store.select(
            "inbound_messages",
            params={
                "select": "message_id,location_id,contact_id,conversation_id,body,raw_payload,"
                "message_type,conversation_provider_id,created_at",
                "message_id": in_(ids),
                "order": "created_at.asc",
            },
        )
        return [InboundMessage.model_validate(row) for row in rows]

    # Conversa, location e agente -----------------------------------------

    async def conversation_agent_enabled(self, conversation_id: str) -> bool:
        rows = await self._store.select(
            "conversations",
            params={
                "select": "agent_enabled",
                "conversation_id": eq(conversation_id),
                "limit": "1",
            },
        )
        return bool(rows) and rows[0].get("agent_enabled") is True

    async def resolve_location_id(self, crm_location_id: str) -> str | None:
        rows = await self._store.select(
            "locations",
            params={"select": "id", "ghl_location_id": eq(crm_location_id), "limit": "1"},
        )
        if not rows or not rows[0].get("id"):
            return None
        return str(rows[0]["id"])

    async def fetch_active_agent(self, location_id: str) -> Agent | None:
        rows = await self._store.select(
            "agents",
            params={
                "location_id": eq(location_id),
                "is_active": eq(True),
                "order": "created_at.desc",
                "limit": "1",
            },
        )
        return Agent.model_validate(rows[0]) if rows else None

    async def fetch_agent(self, agent_id: str) -> Agent | None:
        rows = await self._store.select(
            "agents", params={"id": eq(agent_id), "limit": "1"}
        )
        return Agent.model_validate(rows[0]) if rows else None

    async def knowledge_base_ids(self, agent_id: str) -> list[str]:
        rows = await self._store.select(
            "agent_knowledge_bases",
            params={"select": "knowledge_base_id", "agent_id": eq(agent_id)},
        )
        return [str(row["knowledge_base_id"]) for row in rows if row.get("knowledge_base_id")]

    # Batches -------------------------------------------------------------

    async def find_pending_batch(self, conversation_id: str) -> ConversationBatch | None:
        rows = await self._store.select(
            "conversation_batches",
            params={
                "conversation_id": eq(conversation_id),
                "status": eq("pending"),
                "order": "scheduled_at.desc",
                "limit": "1",
            },
        )
        return ConversationBatch.model_validate(rows[0]) if rows else None

    async def create_batch(self, conversation_id: str, scheduled_at: datetime) -> ConversationBatch:
        rows = await self._store.insert(
            "conversation_batches",
            {
                "conversation_id": conversation_id,
                "status": "pending",
                "scheduled_at": isoformat(scheduled_at),
            },
        )
        if not rows:
            raise RuntimeError("Supabase não devolveu o batch criado")
        return ConversationBatch.model_validate(rows[0])

    async def reschedule_batch(self, batch_id: str, scheduled_at: datetime) -> None:
        await self._store.update(
            "conversation_batches",
            filters={"id": eq(batch_id)},
            patch={"scheduled_at": isoformat(scheduled_at)},
        )

    async def claim_batch(self, batch_id: str) -> bool:
        """Move o batch de `pending` para `processing`; False se já saiu de `pending`."""
        rows = await self._store.update(
            "conversation_batches",
            filters={"id": eq(batch_id), "status": eq("pending")},
            patch={"status": "processing"},
        )
        return bool(rows)

    async def fetch_batch(self, batch_id: str) -> ConversationBatch | None:
        rows = await self._store.select(
            "conversation_batches",
            params={"id": eq(batch_id), "limit": "1"},
        )
        return ConversationBatch.model_validate(rows[0]) if rows else None

    async def finish_batch(self, batch_id: str, status: BatchStatus) -> None:
        """Marca o estado terminal e libera o lock."""
        await self._store.update(
            "conversation_batches",
            filters={"id": eq(batch_id)},
            patch={"status": status, "locked_at": None},
        )

    async def acquire_batch_lock(
        self, batch_id: str, *, now: datetime, stale_before: datetime
    ) -> bool:
        """Compare-and-set atômico no banco; locks anteriores a `stale_before` são recuperáveis."""
        result = await self._store.rpc(
            LOCK_RPC,
            {
                "target_batch_id": batch_id,
                "now_iso": isoformat(now),
                "lock_expiry_iso": isoformat(stale_before),
            },
        )
        # A função devolve as linhas travadas; lista vazia significa que outro worker detém o lock.
        return bool(result)

    # Jobs ----------------------------------------------------------------

    async def enqueue_job(self, job: InboundJob) -> None:
        await self._store.insert("inbound_jobs", job.to_row())

    async def pending_jobs(self, batch_id: str) -> list[InboundJob]:
        rows = await self._store.select(
            "inbound_jobs",
            params={
                "batch_id": eq(batch_id),
                "status": eq("pending"),
                "order": "created_at.asc",
            },
        )
        return [InboundJob.model_validate(row) for row in rows]

    async def update_jobs(
        self,
        batch_id: str,
        *,
        from_status: JobStatus,
        patch: dict[str, Any],
    ) -> None:
        """Transição conjunta de todos os jobs do batch que estão em `from_status`."""
        await self._store.update(
            "inbound_jobs",
            filters={"batch_id": eq(batch_id), "status": eq(from_status)},
            patch=patch,
        )
