"""Agrupamento (debounce) das mensagens de uma conversa em batches.

Cada mensagem aceita estende o batch `pending` da conversa para `agora + 15s`
(ou cria um novo) e enfileira um job com o mesmo horário. Quem consegue o
lock do batch espera o horário agendado com um polling limitado e então
executa o runner uma única vez para todos os jobs acumulados.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, Protocol

from app.core.clock import utcnow
from app.core.logging import get_logger, log_event
from app.models.inbound import ConversationBatch, InboundJob, InboundMessage

logger = get_logger("app.batches")

DEBOUNCE_WINDOW = timedelta(seconds=15)
LOCK_STALE_AFTER = timedelta(seconds=120)
WAIT_MAX_POLLS = 25
WAIT_SLEEP_CAP_SECONDS = 2.0


class WaitOutcome(str, enum.Enum):
    READY = "ready"
    SUPERSEDED = "superseded"
    EXHAUSTED = "exhausted"


class BatchStore(Protocol):
    async def find_pending_batch(self, conversation_id: str) -> ConversationBatch | None: ...

    async def create_batch(self, conversation_id: str, scheduled_at: datetime) -> ConversationBatch: ...

    async def reschedule_batch(self, batch_id: str, scheduled_at: datetime) -> None: ...

    async def fetch_batch(self, batch_id: str) -> ConversationBatch | None: ...

    async def acquire_batch_lock(
        self, batch_id: str, *, now: datetime, stale_before: datetime
    ) -> bool: ...

    async def enqueue_job(self, job: InboundJob) -> None: ...


class BatchRunnerLike(Protocol):
    async def run(self, batch_id: str) -> Any: ...


class BatchScheduler:
    def __init__(
        self,
        repository: BatchStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        window: timedelta = DEBOUNCE_WINDOW,
        lock_stale_after: timedelta = LOCK_STALE_AFTER,
        max_polls: int = WAIT_MAX_POLLS,
        sleep_cap: float = WAIT_SLEEP_CAP_SECONDS,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._sleep = sleep
        self._window = window
        self._lock_stale_after = lock_stale_after
        self._max_polls = max_polls
        self._sleep_cap = sleep_cap

    async def schedule(
        self,
        message: InboundMessage,
        *,
        agent_id: str,
        knowledge_base_ids: list[str],
    ) -> ConversationBatch:
        """Estende (ou cria) o batch pendente e enfileira o job da mensagem."""
        scheduled_at = self._clock() + self._window
        batch = await self._repository.find_pending_batch(message.conversation_id)
        if batch is not None:
            await self._repository.reschedule_batch(batch.id, scheduled_at)
            batch = batch.model_copy(update={"scheduled_at": scheduled_at})
            log_event(logger, "batch.extended", batch_id=batch.id, scheduled_at=scheduled_at)
        else:
            batch = await self._repository.create_batch(message.conversation_id, scheduled_at)
            log_event(logger, "batch.created", batch_id=batch.id, scheduled_at=scheduled_at)

        await self._repository.enqueue_job(
            InboundJob(
                message_id=message.message_id,
                agent_id=agent_id,
                location_id=message.location_id,
                contact_id=message.contact_id,
                conversation_id=message.conversation_id,
                batch_id=batch.id,
                status="pending",
                message_text=message.body,
                scheduled_at=scheduled_at,
                knowledge_base_ids=list(knowledge_base_ids),
                message_type=message.message_type,
                conversation_provider_id=message.conversation_provider_id,
            )
        )
        return batch

    async def try_lock(self, batch_id: str) -> bool:
        now = self._clock()
        acquired = await self._repository.acquire_batch_lock(
            batch_id, now=now, stale_before=now - self._lock_stale_after
        )
        log_event(logger, "batch.lock_attempt", batch_id=batch_id, acquired=acquired)
        return acquired

    async def wait_until_due(self, batch_id: str) -> WaitOutcome:
        """Polling limitado até `scheduled_at` chegar ou o batch deixar de estar pendente."""
        for _ in range(self._max_polls):
            batch = await self._repository.fetch_batch(batch_id)
            if batch is None or batch.status != "pending":
                return WaitOutcome.SUPERSEDED
            remaining = (batch.scheduled_at - self._clock()).total_seconds()
            if remaining <= 0:
                return WaitOutcome.READY
            await self._sleep(min(remaining, self._sleep_cap))
        return WaitOutcome.EXHAUSTED

    async def wait_and_run(self, batch_id: str, runner: BatchRunnerLike) -> Any:
        outcome = await self.wait_until_due(batch_id)
        log_event(logger, "batch.wait_finished", batch_id=batch_id, outcome=outcome.value)
        # O runner não faz nada quando os jobs já foram drenados.
        return await runner.run(batch_id)
