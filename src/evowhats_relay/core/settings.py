"""Configurações Pydantic Settings para o relay Evolution ↔ Bitrix24."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    """Configurações da aplicação. Carrega de env e .env.

    Todas as credenciais devem vir via env. Nunca hardcode.
    Segredos de webhook por instância/tenant têm precedência sobre os valores globais daqui.
    """
    model_config = SettingsConfigDict(env_file=".env", env_prefix="EVW_", case_sensitive=False)

    # Flask
    flask_debug: bool = Field(default=False)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # DB
    database_url: str = Field(..., description="URL do banco, ex: postgresql+psycopg://user:pass@db:5432/app")

    # CRM (Bitrix24)
    crm_client_id: str = Field(default="", description="client_id do app local no Bitrix24")
    crm_client_secret: str = Field(default="", description="client_secret do app local no Bitrix24")
    crm_token_url: str = Field(default="https://oauth.bitrix.info/oauth/token/")
    crm_connector_id: str = Field(default="evolution_whatsapp", description="ID do conector registrado nas Linhas Abertas")
    crm_connector_name: str = Field(default="EvoWhats")
    crm_webhook_secret: str | None = Field(default=None, description="Segredo global de fallback para eventos do Bitrix")
    crm_events_handler_url: str = Field(default="", description="URL pública de /webhooks/crm usada no event.bind")
    crm_redirect_uri: str = Field(default="", description="URL pública de /oauth/crm/callback (redirect_uri do app local)")
    crm_oauth_scope: str = Field(default="imopenlines,imconnector,im,user,event,event_bind")
    crm_oauth_state_ttl_s: int = Field(default=900, description="Validade do state emitido em /oauth/crm/start")

    # WA provider (Evolution API)
    evolution_base_url: str = Field(default="http://localhost:8080")
    evolution_api_key: str = Field(default="")
    evolution_auth_scheme: str = Field(default="apikey", description="apikey | bearer")
    evolution_webhook_secret: str | None = Field(default=None, description="Segredo global de fallback para webhooks da Evolution")
    evolution_integration: str = Field(default="WHATSAPP-BAILEYS")
    evolution_api_version: str | None = Field(default=None, description="Se vazio, detectado via GET / na primeira chamada")
    evolution_webhook_url: str = Field(default="", description="URL pública de /webhooks/evolution configurada na criação da instância")

    # Tempos
    http_timeout_s: float = Field(default=10.0, description="Deadline por tentativa de chamada externa")
    token_skew_s: int = Field(default=60)
    token_refresh_interval_s: float = Field(default=300.0)
    status_poll_interval_s: float = Field(default=5.0)
    status_poll_timeout_s: float = Field(default=120.0)

    # Retry
    retry_max_attempts: int = Field(default=3)
    retry_base_delay_s: float = Field(default=0.5)
    retry_max_delay_s: float = Field(default=4.0)

    # Redelivery (varredura de backlog)
    redelivery_batch_size: int = Field(default=20)
    redelivery_max_attempts: int = Field(default=5)
