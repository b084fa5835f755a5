import base64

import httpx
import pytest

from app.services.links import UNAVAILABLE, reference_urls, validate_links
from app.services.media import download_inline_images, extract_image_urls


def _links_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "ok.exemplo.com":
        return httpx.Response(200)
    if request.url.host == "nohead.exemplo.com":
        return httpx.Response(405 if request.method == "HEAD" else 200)
    return httpx.Response(404)


@pytest.mark.asyncio
async def test_broken_links_are_replaced() -> None:
    text = (
        "Veja [o catálogo](https://quebrado.exemplo.com/catalogo), "
        "o site https://ok.exemplo.com/home e `https://nohead.exemplo.com/x`."
    )

    fixed, broken = await validate_links(text, transport=httpx.MockTransport(_links_handler))

    assert broken == ["https://quebrado.exemplo.com/catalogo"]
    assert fixed.startswith(f"Veja o catálogo {UNAVAILABLE}, ")
    assert "https://ok.exemplo.com/home" in fixed
    assert "`https://nohead.exemplo.com/x`" in fixed


@pytest.mark.asyncio
async def test_trusted_links_are_not_checked() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(404)

    context = "Planos\n\nURL de referência: https://exemplo.com/planos"
    text = "Detalhes em https://exemplo.com/planos."

    fixed, broken = await validate_links(
        text, trusted=reference_urls(context), transport=httpx.MockTransport(handler)
    )

    assert (fixed, broken) == (text, [])
    assert requests == []


def test_image_urls_are_collected_without_duplicates() -> None:
    payload = {
        "media": [{"url": "https://cdn.exemplo.com/a.jpg"}],
        "attachments": [
            {"type": "image", "url": "https://cdn.exemplo.com/b.png"},
            {"type": "file", "url": "https://cdn.exemplo.com/doc.pdf"},
        ],
        "mediaUrl": "https://cdn.exemplo.com/a.jpg",
        "body": "olha https://cdn.exemplo.com/c.webp",
    }

    assert extract_image_urls(payload) == [
        "https://cdn.exemplo.com/a.jpg",
        "https://cdn.exemplo.com/b.png",
        "https://cdn.exemplo.com/c.webp",
    ]
    assert extract_image_urls(None) == []


@pytest.mark.asyncio
async def test_images_are_inlined_up_to_the_limit() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/falha.jpg":
            return httpx.Response(404)
        return httpx.Response(200, content=b"img", headers={"content-type": "image/png; q=1"})

    urls = [
        "https://cdn.exemplo.com/falha.jpg",
        "https://cdn.exemplo.com/1.png",
        "https://cdn.exemplo.com/2.png",
        "https://cdn.exemplo.com/3.png",
    ]

    parts = await download_inline_images(urls, transport=httpx.MockTransport(handler))

    assert parts == [
        {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(b"img").decode()}},
        {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(b"img").decode()}},
    ]
