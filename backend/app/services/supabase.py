"""Cliente genérico do Supabase (PostgREST + RPC) via REST."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import httpx

from app.core.config import Settings, settings as default_settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class StorageError(RuntimeError):
    """Erros de persistência no Supabase."""


class DuplicateRowError(StorageError):
    """Violação de chave única (HTTP 409 ou código Postgres 23505)."""


def eq(value: Any) -> str:
    """Filtro PostgREST de igualdade."""
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def in_(values: Iterable[Any]) -> str:
    """Filtro PostgREST `in.(a,b,c)`."""
    return f"in.({','.join(str(value) for value in values)})"


class SupabaseStore:
    """Pequena camada de acesso às tabelas e funções RPC com a service role."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._transport = transport

    async def select(self, table: str, *, params: dict[str, str]) -> list[dict[str, Any]]:
        response = await self._request("GET", f"/rest/v1/{table}", params=params)
        return self._json_list(response, table)

    async def insert(self, table: str, row: dict[str, Any]) -> list[dict[str, Any]]:
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=row,
            prefer="return=representation",
        )
        return self._json_list(response, table)

    async def update(
        self,
        table: str,
        *,
        filters: dict[str, str],
        patch: dict[str, Any],
    ) -> list[dict[str, Any]]:
        response = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=filters,
            json=patch,
            prefer="return=representation",
        )
        return self._json_list(response, table)

    async def upsert(self, table: str, row: dict[str, Any], *, on_conflict: str) -> None:
        await self._request(
            "POST",
            f"/rest/v1/{table}",
            params={"on_conflict": on_conflict},
            json=row,
            prefer="resolution=merge-duplicates",
        )

    async def rpc(self, function: str, payload: dict[str, Any]) -> Any:
        response = await self._request("POST", f"/rest/v1/rpc/{function}", json=payload)
        if not response.content:
            return None
        return response.json()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        base_url = self._settings.supabase_url
        service_role = self._settings.supabase_service_role
        if not base_url or not service_role:
            raise StorageError("Supabase não está configurado (SUPABASE_URL/SERVICE_ROLE)")

        headers = {
            "apikey": service_role,
            "Authorization": f"Bearer {service_role}",
            "Accept": "application/json",
        }
        if json is not None:
            headers["Content-Type"] = "application/json"
        if prefer:
            headers["Prefer"] = prefer

        url = f"{base_url.rstrip('/')}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.storage_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.request(
                    method, url, params=params, json=json, headers=headers
                )
        except httpx.RequestError as exc:
            logger.exception("supabase.request_failed", extra={"path": path, "error": str(exc)})
            raise StorageError(f"Erro de rede ao acessar o Supabase ({path}): {exc}") from exc

        if response.status_code == 409 or (
            response.status_code >= 400 and "23505" in response.text
        ):
            logger.warning("supabase.duplicate_row", extra={"path": path, "body": response.text})
            raise DuplicateRowError(f"Registro duplicado em {path}: {response.text}")
        if response.status_code >= 400:
            logger.error(
                "supabase.response_error",
                extra={"path": path, "status": response.status_code, "body": response.text},
            )
            raise StorageError(
                f"Supabase respondeu {response.status_code} em {path}: {response.text}"
            )
        return response

    @staticmethod
    def _json_list(response: httpx.Response, table: str) -> list[dict[str, Any]]:
        if not response.content:
            return []
        payload = response.json()
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise StorageError(f"Resposta inesperada do Supabase para {table}: {payload!r}")
        return [row for row in payload if isinstance(row, dict)]
