"""Endpoint de saúde mínimo para validações rápidas."""
from fastapi import APIRouter

from app.core.tasks import background_tasks

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", summary="Estado do serviço")
def healthcheck() -> dict[str, str | int]:
    """Indica que a API está viva e quantos batches rodam em segundo plano."""
    return {"status": "ok", "background_tasks": len(background_tasks)}
