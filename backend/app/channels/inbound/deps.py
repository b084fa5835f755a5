"""Dependências do webhook de mensagens recebidas."""

from functools import lru_cache

from fastapi import Header, HTTPException, Request, status

from app.core.config import settings
from app.core.logging import get_logger
from app.core.security import SignatureError, verify_signature

from .service import InboundService

logger = get_logger("app.channels.inbound")


@lru_cache(maxsize=1)
def get_inbound_service() -> InboundService:
    """Instância única do pipeline; os testes a substituem via `dependency_overrides`."""
    return InboundService()


async def verify_webhook_signature(
    request: Request,
    x_wh_signature: str | None = Header(default=None),
) -> None:
    """Valida o HMAC do corpo quando `WEBHOOK_SECRET` está configurado."""
    if not settings.webhook_secret:
        return
    payload = await request.body()
    try:
        verify_signature(settings.webhook_secret, payload, x_wh_signature)
    except SignatureError as exc:
        logger.warning("inbound.signature_rejected", extra={"error": str(exc)})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
