"""Configuração central baseada em variáveis de ambiente."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """Configuração obrigatória ausente ou inválida."""


REQUIRED_SETTINGS: dict[str, str] = {
    "supabase_url": "SUPABASE_URL",
    "supabase_service_role": "SUPABASE_SERVICE_ROLE_KEY",
    "ghl_client_id": "GHL_CLIENT_ID",
    "ghl_client_secret": "GHL_CLIENT_SECRET",
    "ghl_company_id": "GHL_COMPANY_ID",
    "ghl_redirect_uri": "GHL_AUTH_REDIRECT_URI",
    "gemini_api_key": "GEMINI_API_KEY",
}


class Settings(BaseSettings):
    """Valores globais lidos do `.env` ou do ambiente."""

    environment: str = "development"
    log_level: str | None = Field(
        default=None,
        description="Nível de logging global (debug, info, warning). Sem valor, depende do ambiente.",
    )
    request_log_level: str = Field(
        default="info",
        description="Nível usado nos eventos request.started/completed do middleware.",
    )
    request_log_skip_prefixes: tuple[str, ...] = Field(
        default=("/health", "/docs", "/openapi", "/favicon"),
        description="Prefixos de rota que não geram eventos de request.",
    )
    log_file_path: str | None = None

    supabase_url: str | None = None
    supabase_service_role: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_ROLE", "supabase_service_role"
        ),
    )
    storage_timeout_seconds: float = 10.0

    ghl_api_url: str = "https://services.leadconnectorhq.com"
    ghl_client_id: str | None = None
    ghl_client_secret: str | None = None
    ghl_company_id: str | None = None
    ghl_redirect_uri: str | None = Field(
        default=None,
        validation_alias=AliasChoices("GHL_AUTH_REDIRECT_URI", "GHL_REDIRECT_URI", "ghl_redirect_uri"),
    )
    ghl_api_version: str = "2021-07-28"
    ghl_conversations_api_version: str = "2021-04-15"
    ghl_timeout_seconds: float = 15.0

    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.5-flash-lite"
    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_timeout_seconds: float = 60.0

    openai_api_key: str | None = None
    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    embedding_model: str = "text-embedding-3-small"

    webhook_secret: str | None = Field(
        default=None,
        description="Segredo HMAC do header x-wh-signature. Sem valor, a assinatura não é validada.",
    )
    reply_link_validation: bool = Field(
        default=True,
        description="Verifica links da resposta que não vieram do contexto recuperado.",
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    def missing_required(self) -> list[str]:
        """Retorna os nomes de variáveis obrigatórias que estão vazias."""
        return [env for field, env in REQUIRED_SETTINGS.items() if not getattr(self, field)]

    def validate_required(self) -> None:
        """Falha cedo, no startup, quando falta alguma credencial obrigatória."""
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(
                f"Variáveis de ambiente obrigatórias ausentes: {', '.join(missing)}"
            )


settings = Settings()
