"""Cache de tokens do CRM (agency e location) persistido no Supabase."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from app.core.clock import isoformat, parse_timestamp
from app.services.supabase import SupabaseStore, eq

AGENCY_KEY = "agency"


@dataclass(slots=True)
class AgencyToken:
    access_token: str
    refresh_token: str
    expires_at: datetime | None


@dataclass(slots=True)
class LocationToken:
    access_token: str
    expires_at: datetime | None


class TokenRepository:
    def __init__(self, store: SupabaseStore | None = None) -> None:
        self._store = store or SupabaseStore()

    async def get_location_token(self, location_id: str) -> LocationToken | None:
        rows = await self._store.select(
            "location_token",
            params={
                "select": "accesstoken,expires_at",
                "locationid": eq(location_id),
                "limit": "1",
            },
        )
        if not rows or not rows[0].get("accesstoken"):
            return None
        row = rows[0]
        return LocationToken(
            access_token=str(row["accesstoken"]),
            expires_at=parse_timestamp(row.get("expires_at")),
        )

    async def save_location_token(
        self, location_id: str, access_token: str, expires_at: datetime
    ) -> None:
        await self._store.upsert(
            "location_token",
            {
                "locationid": location_id,
                "accesstoken": access_token,
                "expires_at": isoformat(expires_at),
            },
            on_conflict="locationid",
        )

    async def get_agency_token(self) -> AgencyToken | None:
        rows = await self._store.select(
            "agency_token",
            params={
                "select": "access_token,refresh_token,expires_at",
                "key": eq(AGENCY_KEY),
                "limit": "1",
            },
        )
        if not rows or not rows[0].get("access_token"):
            return None
        row = rows[0]
        return AgencyToken(
            access_token=str(row["access_token"]),
            refresh_token=str(row.get("refresh_token") or ""),
            expires_at=parse_timestamp(row.get("expires_at")),
        )

    async def save_agency_token(
        self, access_token: str, refresh_token: str, expires_at: datetime
    ) -> None:
        await self._store.update(
            "agency_token",
            filters={"key": eq(AGENCY_KEY)},
            patch={
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_at": isoformat(expires_at),
            },
        )
