"""Application settings via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Directory holding config.yaml and field-mappings.yaml
    config_dir: str = "config"

    # Server
    host: str = "0.0.0.0"
    port: int = 5002
    log_level: str = "info"
    json_logs: bool = True

    # Inbound rate limiting
    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 60

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "BRIDGE_",
        "extra": "ignore",
    }


settings = Settings()
