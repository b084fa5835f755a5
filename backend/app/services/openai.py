"""Cliente centralizado de embeddings (OpenRouter ou OpenAI)."""

from functools import lru_cache

from openai import AsyncOpenAI

from app.core.config import Settings, settings


def build_embeddings_client(config: Settings) -> AsyncOpenAI | None:
    """OpenRouter tem prioridade quando a chave existe; sem nenhuma chave, retorna None."""
    if config.openrouter_api_key:
        return AsyncOpenAI(api_key=config.openrouter_api_key, base_url=config.openrouter_base_url)
    if config.openai_api_key:
        return AsyncOpenAI(api_key=config.openai_api_key)
    return None


@lru_cache(maxsize=1)
def get_embeddings_client() -> AsyncOpenAI | None:
    """Cliente reutilizável construído com a configuração global."""
    return build_embeddings_client(settings)
