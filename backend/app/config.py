from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Regbrief API"
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True
    log_level: str = "INFO"
    request_id_header: str = "X-Request-ID"
    auth_enabled: bool = False
    auth_admin_group: str = "admin"
    cognito_region: str = ""
    cognito_user_pool_id: str = ""
    cognito_app_client_id: str = ""
    cognito_issuer: str = ""
    # Shared secret for the scheduler hitting /cron/*. Empty disables the cron routes.
    cron_secret: str = ""

    aws_region: str = "us-east-1"
    # Base generation uses the larger model, per-client customization the lite one. Tenants can
    # override either through their model_config.
    bedrock_model_id: str = "amazon.nova-pro-v1:0"
    bedrock_lite_model_id: str = "amazon.nova-lite-v1:0"
    bedrock_connect_timeout_seconds: float = 10.0
    bedrock_read_timeout_seconds: float = 300.0
    generation_temperature: float = 0.3
    generation_max_tokens: int = 4000
    slide_generation_max_tokens: int = 16000
    generation_max_input_chars: int = 180_000
    generation_base_cost_usd: float = 0.22
    generation_client_cost_usd: float = 0.02

    storage_backend: str = "local"  # local|s3
    s3_bucket: str = "regbrief-dev"
    s3_prefix: str = "regbrief"
    database_url: str = "sqlite:///./regbrief.db"
    storage_root: str = "data/blobs"

    registry_base_url: str = "https://www.federalregister.gov/api/v1"
    registry_label: str = "Federal Register"
    registry_timeout_seconds: float = 30.0
    feed_timeout_seconds: float = 20.0
    feed_user_agent: str = "Mozilla/5.0 (compatible; Regulatory Monitor/1.0)"
    monitor_initial_document_count: int = 5
    monitor_poll_document_count: int = 20
    monitor_max_pages: int = 1

    customization_max_workers: int = 4
    process_outputs_batch_size: int = 5
    error_message_max_chars: int = 2000
    max_upload_file_bytes: int = 25 * 1024 * 1024

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
