"""Verificação dos links presentes na resposta final."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable

import httpx

from app.core.logging import get_logger

logger = get_logger(__name__)

LINK_TIMEOUT_SECONDS = 2.0
UNAVAILABLE = "(link indisponível)"
USER_AGENT = "Inbound-Link-Checker/1.0"

_URL_RE = re.compile(r"`?(https?://[^\s)\]`]+)")
_REFERENCE_RE = re.compile(r"URL de referência:\s*(\S+)")


def _clean(url: str) -> str:
    return re.sub(r"[)\],.]$", "", url)


def reference_urls(context: str) -> set[str]:
    """URLs publicadas no contexto recuperado como `URL de referência:`."""
    return {_clean(url) for url in _REFERENCE_RE.findall(context or "")}


async def check_link(client: httpx.AsyncClient, url: str) -> bool:
    """HEAD primeiro; servidores que recusam HEAD (405) recebem um GET."""
    try:
        response = await client.head(url)
        if response.status_code == 405:
            response = await client.get(url)
    except httpx.HTTPError as exc:
        logger.info("links.check_failed", extra={"url": url, "error": str(exc)})
        return False
    return response.is_success


async def validate_links(
    text: str,
    *,
    trusted: Iterable[str] = (),
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[str, list[str]]:
    """Substitui links quebrados por `(link indisponível)`.

    Links em `trusted` (vindos do contexto) não são verificados. Retorna o texto
    corrigido e a lista de links removidos.
    """
    found = list(dict.fromkeys(_clean(match) for match in _URL_RE.findall(text or "")))
    trusted_set = set(trusted)
    candidates = [url for url in found if url not in trusted_set]
    if not candidates:
        return text, []

    async with httpx.AsyncClient(
        timeout=LINK_TIMEOUT_SECONDS,
        transport=transport,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    ) as client:
        results = await asyncio.gather(*(check_link(client, url) for url in candidates))

    broken = [url for url, ok in zip(candidates, results) if not ok]
    fixed = text
    for url in broken:
        escaped = re.escape(url)
        fixed = re.sub(rf"\[([^\]]+)\]\({escaped}\)", rf"\1 {UNAVAILABLE}", fixed)
        fixed = re.sub(rf"`{escaped}`", UNAVAILABLE, fixed)
        fixed = fixed.replace(url, UNAVAILABLE)
        logger.warning("links.broken_removed", extra={"url": url})
    return fixed, broken
