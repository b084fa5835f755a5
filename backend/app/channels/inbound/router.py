"""Endpoint do webhook de mensagens recebidas do CRM."""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.core.logging import get_logger

from . import schemas
from .deps import get_inbound_service, verify_webhook_signature
from .service import InboundService, MissingIdentifiersError

router = APIRouter(prefix="/inbound", tags=["inbound"])

logger = get_logger("app.channels.inbound")


@router.post(
    "/webhook",
    response_model=schemas.WebhookResponse,
    summary="Recebe mensagens do CRM e agenda a resposta",
)
async def inbound_webhook(
    request: Request,
    _: None = Depends(verify_webhook_signature),
    service: InboundService = Depends(get_inbound_service),
) -> schemas.WebhookResponse:
    """Responde 200 para aceite e desvios de negócio; 400 para payload inválido."""
    try:
        raw = await request.json()
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body"
        ) from exc

    try:
        result = await service.handle_webhook(raw)
    except MissingIdentifiersError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("inbound.failed", extra={"error": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc

    return schemas.WebhookResponse(status=result.status, batch_id=result.batch_id)
