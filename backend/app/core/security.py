"""Validação de assinaturas de webhook e mascaramento de segredos."""

import hmac
from hashlib import sha256


class SignatureError(Exception):
    """Assinatura ausente ou inválida."""


def verify_signature(
    secret: str, payload: bytes, signature: str | None, *, header_prefix: str = "sha256="
) -> None:
    """Verifica uma assinatura HMAC-SHA256 do corpo bruto.

    O prefixo (ex. "sha256=") é opcional no valor recebido.

    Raises:
        SignatureError: quando a assinatura está ausente ou não confere.
    """
    if not signature:
        raise SignatureError("Missing signature header")
    received = signature.strip()
    if header_prefix and received.startswith(header_prefix):
        received = received[len(header_prefix):]
    expected = hmac.new(secret.encode(), payload, sha256).hexdigest()
    if not hmac.compare_digest(expected, received.lower()):
        raise SignatureError("Invalid signature received")


def mask_secret(value: str | None) -> str | None:
    """Mascara tokens para logging seguro."""
    if not value:
        return value
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"
