"""Execução de um batch: da leitura dos jobs pendentes ao envio da resposta."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from app.assistants.generation import GenerationEngine
from app.assistants.intents import (
    ContactSnapshot,
    IntentContext,
    IntentRouter,
    classify,
    prefetch_contact,
    scrub_internal_ids,
)
from app.assistants.prompts import build_system_prompt, build_user_turn
from app.assistants.tools import ToolContext, ToolDispatcher
from app.core.clock import utcnow
from app.core.config import Settings, settings as default_settings
from app.core.logging import bind_batch, get_logger, log_event
from app.models.inbound import InboundJob, InboundMessage
from app.repositories.inbound import InboundRepository
from app.services import media
from app.services.ghl import CrmClient, CrmError, build_history, map_message_type
from app.services.ghl_auth import CrmTokenBroker
from app.services.links import reference_urls, validate_links
from app.services.retrieval import RetrievalService, format_knowledge_context
from app.services.supabase import StorageError
from app.services.trace import DecisionTrace

logger = get_logger("app.batches")

DEFAULT_CHANNEL = "WhatsApp"
SKIPPED_RESPONSE = "Disabled"


@dataclass(slots=True)
class RunResult:
    batch_id: str
    status: str
    reply: str | None = None


def _first_value(source: dict[str, Any] | None, *keys: str) -> Any:
    if not isinstance(source, dict):
        return None
    for key in keys:
        value = source.get(key)
        if value:
            return value
    return None


def infer_channel(job: InboundJob, message: InboundMessage | None) -> tuple[str, str | None]:
    """Tipo de envio e provider a partir do job, da mensagem gravada e do payload bruto."""
    raw = message.raw_payload if message else None
    message_type = (
        job.message_type
        or (message.message_type if message else None)
        or _first_value(raw, "messageType", "message_type", "type")
        or DEFAULT_CHANNEL
    )
    provider_id = (
        job.conversation_provider_id
        or (message.conversation_provider_id if message else None)
        or _first_value(raw, "conversationProviderId", "conversation_provider_id")
    )
    provider = str(provider_id) if provider_id else None
    return map_message_type(str(message_type), provider), provider


class BatchRunner:
    def __init__(
        self,
        repository: InboundRepository | None = None,
        *,
        retrieval: RetrievalService | None = None,
        token_broker: CrmTokenBroker | None = None,
        crm: CrmClient | None = None,
        engine: GenerationEngine | None = None,
        intents: IntentRouter | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        media_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._repository = repository or InboundRepository()
        self._retrieval = retrieval or RetrievalService()
        self._token_broker = token_broker or CrmTokenBroker()
        self._crm = crm or CrmClient()
        self._engine = engine or GenerationEngine()
        self._intents = intents or IntentRouter()
        self._settings = settings or default_settings
        self._clock = clock
        self._media_transport = media_transport

    async def run(self, batch_id: str) -> RunResult | None:
        with bind_batch(batch_id):
            trace = DecisionTrace(self._clock)
            try:
                return await self._run(batch_id, trace)
            except Exception as exc:
                logger.exception("batch.failed", extra={"error": str(exc)})
                await self._repository.update_jobs(
                    batch_id,
                    from_status="processing",
                    patch={
                        "status": "error",
                        "error_message": str(exc),
                        "context_sources": trace.to_list(),
                    },
                )
                await self._repository.finish_batch(batch_id, "error")
                return RunResult(batch_id=batch_id, status="error")

    async def _run(self, batch_id: str, trace: DecisionTrace) -> RunResult | None:
        # Fora de `pending`, mensagens novas abrem outro batch com trava própria.
        if not await self._repository.claim_batch(batch_id):
            log_event(logger, "batch.not_claimed")
            return None
        jobs = await self._repository.pending_jobs(batch_id)
        if not jobs:
            log_event(logger, "batch.nothing_pending")
            await self._repository.finish_batch(batch_id, "completed")
            return None
        first = jobs[0]
        await self._repository.update_jobs(
            batch_id, from_status="pending", patch={"status": "processing"}
        )

        if not await self._repository.conversation_agent_enabled(first.conversation_id):
            trace.decision("conversation_agent_disabled", conversationId=first.conversation_id)
            return await self._skip(batch_id, trace)

        agent = await self._repository.fetch_agent(first.agent_id)
        if agent is None or not agent.is_active:
            trace.decision("agent_inactive", agentId=first.agent_id)
            return await self._skip(batch_id, trace)

        combined = "\n\n".join(job.message_text for job in jobs)
        retrieval = await self._retrieval.retrieve(combined, first.knowledge_base_ids)
        context = format_knowledge_context(retrieval.items)
        trace.add(
            "kb_retrieval",
            mode=retrieval.mode,
            kb_ids_count=len(first.knowledge_base_ids),
            returned=len(retrieval.items),
        )

        token = await self._token_broker.get_location_token(first.location_id)
        history = await self._history(token, first.conversation_id)

        flags = classify(combined)
        trace.decision(
            "start_runBatch",
            batchId=batch_id,
            contactId=first.contact_id,
            conversationId=first.conversation_id,
            locationId=first.location_id,
            jobs=len(jobs),
            flags=flags.as_trace(),
        )

        snapshot = ContactSnapshot()
        if flags.wants_contact_snapshot:
            snapshot = await prefetch_contact(self._crm, token, first.contact_id, trace)

        dispatcher = ToolDispatcher(
            self._crm,
            token,
            ToolContext(
                location_id=first.location_id,
                contact_id=first.contact_id,
                conversation_id=first.conversation_id,
            ),
        )
        messages = await self._stored_messages(jobs)

        reply = await self._intents.resolve(
            IntentContext(
                text=combined, flags=flags, snapshot=snapshot, trace=trace, dispatcher=dispatcher
            )
        )
        if reply is None:
            user_text = build_user_turn(
                history=history,
                context=context,
                messages=combined,
                metadata={
                    "locationId": first.location_id,
                    "conversationId": first.conversation_id,
                    "contactId": first.contact_id,
                    "messageType": first.message_type or "",
                    "conversationProviderId": first.conversation_provider_id or "",
                },
                company=snapshot.company,
                snapshot=snapshot.prompt_block(),
            )
            images = await self._inline_images(messages, trace)
            reply = await self._engine.run(
                system_prompt=build_system_prompt(agent),
                user_parts=[{"text": user_text}, *images],
                dispatcher=dispatcher,
                trace=trace,
            )
            if self._settings.reply_link_validation:
                reply, broken = await validate_links(reply, trusted=reference_urls(context))
                if broken:
                    trace.decision("broken_links_removed", links=broken)

        reply = scrub_internal_ids(reply, trace)

        stored = next((m for m in messages if m.message_id == first.message_id), None)
        await self._send_reply(token, first, stored, reply, trace)

        await self._repository.update_jobs(
            batch_id,
            from_status="processing",
            patch={
                "status": "completed",
                "response_text": reply,
                "context_sources": trace.to_list(),
            },
        )
        await self._repository.finish_batch(batch_id, "completed")
        log_event(logger, "batch.completed", jobs=len(jobs))
        return RunResult(batch_id=batch_id, status="completed", reply=reply)

    async def _skip(self, batch_id: str, trace: DecisionTrace) -> RunResult:
        await self._repository.update_jobs(
            batch_id,
            from_status="processing",
            patch={
                "status": "skipped",
                "response_text": SKIPPED_RESPONSE,
                "context_sources": trace.to_list(),
            },
        )
        await self._repository.finish_batch(batch_id, "completed")
        log_event(logger, "batch.skipped", steps=trace.steps())
        return RunResult(batch_id=batch_id, status="skipped")

    async def _history(self, token: str, conversation_id: str) -> str:
        try:
            messages = await self._crm.fetch_messages(token, conversation_id)
        except CrmError as exc:
            logger.warning("batch.history_unavailable", extra={"error": str(exc)})
            return ""
        return build_history(messages)

    async def _stored_messages(self, jobs: list[InboundJob]) -> list[InboundMessage]:
        try:
            return await self._repository.fetch_messages(job.message_id for job in jobs)
        except StorageError as exc:
            logger.warning("batch.messages_unavailable", extra={"error": str(exc)})
            return []

    async def _inline_images(
        self, messages: list[InboundMessage], trace: DecisionTrace
    ) -> list[dict[str, Any]]:
        urls = [url for message in messages for url in media.extract_image_urls(message.raw_payload)]
        if not urls:
            return []
        parts = await media.download_inline_images(urls, transport=self._media_transport)
        trace.add("image_attachments", found=len(urls), attached=len(parts))
        return parts

    async def _send_reply(
        self,
        token: str,
        job: InboundJob,
        message: InboundMessage | None,
        reply: str,
        trace: DecisionTrace,
    ) -> None:
        channel, provider_id = infer_channel(job, message)
        try:
            response = await self._crm.send_message(
                token,
                message_type=channel,
                contact_id=job.contact_id,
                message=reply,
                conversation_provider_id=provider_id,
            )
        except CrmError as exc:
            trace.add("reply_dispatch", ok=False, type=channel, error=str(exc))
            return
        trace.add("reply_dispatch", ok=response.ok, type=channel, status=response.status)
        if not response.ok:
            logger.warning("batch.reply_not_delivered", extra={"status": response.status})
