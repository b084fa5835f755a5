"""Obtenção de tokens por location na API do CRM (GoHighLevel).

O cache tem dois níveis: o token da location (tabela `location_token`) é
reutilizado enquanto não expira; quando expira, o token da agência (tabela
`agency_token`) é renovado se estiver perto do vencimento e usado para emitir
um novo token da location.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import httpx

from app.core.clock import utcnow
from app.core.config import Settings, settings as default_settings
from app.core.logging import get_logger, log_event
from app.core.security import mask_secret
from app.repositories.tokens import TokenRepository

logger = get_logger(__name__)

AGENCY_REFRESH_MARGIN = timedelta(seconds=120)
DEFAULT_LOCATION_TOKEN_TTL = 86400

_BEARER_PREFIX = re.compile(r"^Bearer\s+", re.IGNORECASE)


class TokenBrokerError(RuntimeError):
    """Falha ao obter ou renovar tokens do CRM."""


def strip_bearer(value: Any) -> str:
    return _BEARER_PREFIX.sub("", str(value or "")).strip()


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value:
            return value
    return None


class CrmTokenBroker:
    def __init__(
        self,
        tokens: TokenRepository | None = None,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._tokens = tokens or TokenRepository()
        self._settings = settings or default_settings
        self._transport = transport
        self._clock = clock

    async def get_location_token(self, location_id: str) -> str:
        now = self._clock()
        cached = await self._tokens.get_location_token(location_id)
        if cached and cached.expires_at and now < cached.expires_at:
            return strip_bearer(cached.access_token)

        agency = await self._tokens.get_agency_token()
        if agency is None:
            raise TokenBrokerError("Agency token not found")

        agency_token = strip_bearer(agency.access_token)
        if agency.expires_at is None or agency.expires_at - AGENCY_REFRESH_MARGIN <= now:
            agency_token = await self._refresh_agency_token(agency.refresh_token)

        token, expires_in = await self._mint_location_token(agency_token, location_id)
        expires_at = self._clock() + timedelta(seconds=expires_in)
        await self._tokens.save_location_token(location_id, token, expires_at)
        log_event(
            logger,
            "ghl_auth.location_token_minted",
            location_id=location_id,
            token=mask_secret(token),
            expires_at=expires_at.isoformat(),
        )
        return token

    async def _refresh_agency_token(self, refresh_token: str) -> str:
        form = {
            "grant_type": "refresh_token",
            "client_id": self._settings.ghl_client_id or "",
            "client_secret": self._settings.ghl_client_secret or "",
            "refresh_token": refresh_token,
            "user_type": "Company",
            "redirect_uri": self._settings.ghl_redirect_uri or "",
        }
        response = await self._post("/oauth/token", data=form)
        if response.status_code >= 400:
            raise TokenBrokerError(f"Falha ao renovar agency token: {response.text}")

        payload = _json_object(response)
        access_token = strip_bearer(payload.get("access_token"))
        if not access_token:
            raise TokenBrokerError("Resposta sem access_token ao renovar agency token.")

        expires_in = _as_seconds(payload.get("expires_in"), DEFAULT_LOCATION_TOKEN_TTL)
        expires_at = self._clock() + timedelta(seconds=expires_in)
        await self._tokens.save_agency_token(
            access_token, str(payload.get("refresh_token") or refresh_token), expires_at
        )
        log_event(
            logger,
            "ghl_auth.agency_token_refreshed",
            token=mask_secret(access_token),
            expires_at=expires_at.isoformat(),
        )
        return access_token

    async def _mint_location_token(self, agency_token: str, location_id: str) -> tuple[str, int]:
        response = await self._post(
            "/oauth/locationToken",
            json={"locationId": location_id, "companyId": self._settings.ghl_company_id or ""},
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {agency_token}",
                "Version": self._settings.ghl_api_version,
            },
        )
        if response.status_code >= 400:
            raise TokenBrokerError(f"Erro ao gerar token de location: {response.text}")

        payload = _json_object(response)
        nested = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        raw_token = _first_present(payload, "access_token", "accessToken", "token") or _first_present(
            nested, "access_token", "accessToken"
        )
        token = strip_bearer(raw_token)
        if not token:
            raise TokenBrokerError("Resposta sem access_token para location.")
        expires_in = _as_seconds(
            _first_present(payload, "expires_in", "expiresIn"), DEFAULT_LOCATION_TOKEN_TTL
        )
        return token, expires_in

    async def _post(self, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._settings.ghl_api_url.rstrip('/')}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.ghl_timeout_seconds, transport=self._transport
            ) as client:
                return await client.post(url, **kwargs)
        except httpx.RequestError as exc:
            logger.exception("ghl_auth.request_failed", extra={"path": path, "error": str(exc)})
            raise TokenBrokerError(f"Erro de rede ao acessar {path}: {exc}") from exc


def _json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise TokenBrokerError(f"Resposta inválida do CRM: {response.text!r}") from exc
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        return payload[0]
    if not isinstance(payload, dict):
        raise TokenBrokerError(f"Resposta inesperada do CRM: {payload!r}")
    return payload


def _as_seconds(value: Any, default: int) -> int:
    try:
        seconds = int(float(value))
    except (TypeError, ValueError):
        return default
    return seconds if seconds > 0 else default
