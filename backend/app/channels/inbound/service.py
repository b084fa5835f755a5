"""Ingestão do webhook: deduplicação, filtros de negócio e agendamento do batch."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from app.core.clock import utcnow
from app.core.logging import get_logger, log_event
from app.core.tasks import BackgroundTaskRegistry, background_tasks
from app.models.inbound import InboundMessage
from app.repositories.inbound import InboundRepository
from app.services.batch_runner import BatchRunner
from app.services.batching import BatchRunnerLike, BatchScheduler
from app.services.supabase import DuplicateRowError

from . import schemas

logger = get_logger("app.channels.inbound")

IngestStatus = Literal["accepted", "ignored", "duplicate", "disabled"]


class MissingIdentifiersError(ValueError):
    """O payload não traz conversationId, locationId ou contactId."""


@dataclass(slots=True)
class IngestResult:
    status: IngestStatus
    batch_id: str | None = None


class InboundService:
    def __init__(
        self,
        repository: InboundRepository | None = None,
        *,
        scheduler: BatchScheduler | None = None,
        runner: BatchRunnerLike | None = None,
        tasks: BackgroundTaskRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository or InboundRepository()
        self._scheduler = scheduler or BatchScheduler(self._repository, clock=clock)
        self._runner = runner or BatchRunner(self._repository, clock=clock)
        self._tasks = tasks if tasks is not None else background_tasks
        self._clock = clock

    async def handle_webhook(self, raw: Any) -> IngestResult:
        """Processa uma entrega do webhook.

        Desvios de negócio (direção, chamada de voz, duplicata, agente
        desligado, location ou agente inexistente) retornam um resultado de
        sucesso para que o provedor não reenvie. Erros de persistência
        propagam e viram 500.

        Raises:
            MissingIdentifiersError: quando faltam IDs obrigatórios.
        """
        message = schemas.WebhookMessage.from_payload(
            schemas.unwrap_envelope(raw), now=self._clock()
        )

        if not message.is_inbound or message.is_call:
            log_event(
                logger,
                "inbound.ignored",
                message_id=message.message_id,
                direction=message.direction,
                message_type=message.message_type,
            )
            return IngestResult(status="ignored")

        missing = message.missing_identifiers()
        if missing:
            raise MissingIdentifiersError(f"Missing required fields: {', '.join(missing)}")
        conversation_id = str(message.conversation_id)

        if await self._repository.message_exists(message.message_id):
            log_event(logger, "inbound.duplicate", message_id=message.message_id)
            return IngestResult(status="duplicate")

        if not await self._repository.conversation_agent_enabled(conversation_id):
            log_event(logger, "inbound.conversation_disabled", conversation_id=conversation_id)
            return IngestResult(status="disabled")

        location_id = await self._repository.resolve_location_id(str(message.location_id))
        if location_id is None:
            log_event(logger, "inbound.unknown_location", location_id=message.location_id)
            return IngestResult(status="disabled")

        agent = await self._repository.fetch_active_agent(location_id)
        if agent is None:
            log_event(logger, "inbound.no_active_agent", location_id=location_id)
            return IngestResult(status="disabled")

        kb_ids = await self._repository.knowledge_base_ids(agent.id)
        stored = InboundMessage(
            message_id=message.message_id,
            location_id=str(message.location_id),
            contact_id=str(message.contact_id),
            conversation_id=conversation_id,
            body=message.body,
            raw_payload=message.raw,
            agent_id=agent.id,
            message_type=message.message_type,
            conversation_provider_id=message.conversation_provider_id,
        )
        try:
            await self._repository.insert_message(stored)
        except DuplicateRowError:
            # entrega concorrente do mesmo messageId venceu a corrida
            log_event(logger, "inbound.duplicate", message_id=message.message_id, race=True)
            return IngestResult(status="duplicate")

        batch = await self._scheduler.schedule(stored, agent_id=agent.id, knowledge_base_ids=kb_ids)
        if await self._scheduler.try_lock(batch.id):
            self._tasks.spawn(
                f"batch:{batch.id}", self._scheduler.wait_and_run(batch.id, self._runner)
            )

        log_event(
            logger,
            "inbound.accepted",
            message_id=message.message_id,
            conversation_id=conversation_id,
            batch_id=batch.id,
        )
        return IngestResult(status="accepted", batch_id=batch.id)
