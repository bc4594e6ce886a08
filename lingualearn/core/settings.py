from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_env: str = "dev"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    document_store_backend: str = "memory"
    runtime_data_dir: str = "data/system"
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "lingualearn"
    mongodb_use_transactions: bool = False
    store_max_retries: int = 3
    store_retry_base_delay_seconds: float = 0.25

    quiz_tick_seconds: float = 1.0
    quiz_speed_bonus_seconds: int = 300
    quiz_speed_bonus_xp: int = 10
    quiz_accuracy_bonus_ratio: float = 0.5

    progress_accuracy_window: int = 100
    progress_recent_days: int = 7

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
