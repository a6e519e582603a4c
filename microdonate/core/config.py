from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    jwt_secret: str = "dev"
    jwt_alg: str = "HS256"
    access_ttl_min: int = 60
    session_idle_min: int = 30

    use_mongo: bool = False
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "microdonate"

    log_level: str = "INFO"

    # daily cause expiry sweep (UTC)
    scheduler_enabled: bool = True
    expiry_cron_hour: int = 0
    expiry_cron_minute: int = 0

    totp_issuer: str = "MDP"
    totp_valid_window: int = 2
    backup_code_count: int = 10

    # honours `simulate_failure` on donation requests; never enable in production
    enable_fault_injection: bool = False

    cors_origins: List[str] = ["*"]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
