"""Imagens anexadas às mensagens recebidas."""

from __future__ import annotations

import base64
import re
from collections.abc import Iterable
from typing import Any

import httpx

from app.core.logging import get_logger

logger = get_logger(__name__)

MAX_INLINE_IMAGES = 3
IMAGE_TIMEOUT_SECONDS = 10.0

_IMAGE_URL_RE = re.compile(r"(https?://[^\s)]+\.(?:jpg|jpeg|png|gif|webp|heic|heif))", re.IGNORECASE)


def _media_url(item: Any) -> str | None:
    if not isinstance(item, dict):
        return None
    value = item.get("url") or item.get("mediaUrl")
    return value if isinstance(value, str) and value else None


def extract_image_urls(raw_payload: Any) -> list[str]:
    """URLs de imagem de um payload do webhook, sem duplicatas e na ordem encontrada."""
    if not isinstance(raw_payload, dict):
        return []

    urls: list[str] = []
    media = raw_payload.get("media")
    if isinstance(media, list):
        urls.extend(url for url in map(_media_url, media) if url)
    elif isinstance(media, dict) and isinstance(media.get("url"), str):
        urls.append(media["url"])

    attachments = raw_payload.get("attachments")
    if isinstance(attachments, list):
        for attachment in attachments:
            if isinstance(attachment, dict) and attachment.get("type") == "image":
                url = _media_url(attachment)
                if url:
                    urls.append(url)

    if isinstance(raw_payload.get("mediaUrl"), str) and raw_payload["mediaUrl"]:
        urls.append(raw_payload["mediaUrl"])

    body = raw_payload.get("body")
    if isinstance(body, str):
        urls.extend(_IMAGE_URL_RE.findall(body))

    return list(dict.fromkeys(urls))


async def download_inline_images(
    urls: Iterable[str],
    *,
    limit: int = MAX_INLINE_IMAGES,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[dict[str, Any]]:
    """Baixa até `limit` imagens e devolve partes `inlineData`; falhas são ignoradas."""
    selected = list(dict.fromkeys(urls))[:limit]
    if not selected:
        return []

    parts: list[dict[str, Any]] = []
    async with httpx.AsyncClient(
        timeout=IMAGE_TIMEOUT_SECONDS, transport=transport, follow_redirects=True
    ) as client:
        for url in selected:
            try:
                response = await client.get(url)
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                logger.warning("media.download_failed", extra={"url": url, "error": str(exc)})
                continue
            if response.status_code >= 400:
                logger.warning(
                    "media.download_failed", extra={"url": url, "status": response.status_code}
                )
                continue
            mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
            parts.append(
                {
                    "inlineData": {
                        "mimeType": mime_type or "image/jpeg",
                        "data": base64.b64encode(response.content).decode("ascii"),
                    }
                }
            )
    return parts
