from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "Local CA Manager"
    LOG_LEVEL: str = "INFO"

    # Export logs/spans/metrics to the console via OpenTelemetry (noisy in the menu)
    OTEL_CONSOLE_EXPORT: bool = False

    # PKI store
    PKI_BASE_DIR: str = "my_pki"

    # Key sizes
    ROOT_KEY_SIZE: int = 4096
    LEAF_KEY_SIZE: int = 4096

    # Validity defaults (days)
    ROOT_VALIDITY_DAYS: int = 3650
    LEAF_VALIDITY_DAYS: int = 365

    # Fixed subject fields for leaf certificates (CN is always the domain)
    LEAF_COUNTRY: str = "DE"
    LEAF_STATE: str = "Internal"
    LEAF_LOCALITY: str = "Internal"
    LEAF_ORGANIZATION: str = "Internal Security"


settings = Settings()
