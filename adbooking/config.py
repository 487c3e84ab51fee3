from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    # Tokens are issued by the auth service, this service only verifies them
    SECRET_KEY: str
    ALGORITHM: str

    REDIS_URL: str

    # Shared secret the relay presents when it reads/writes room history
    SERVICE_TOKEN: str = "relay-dev-token"

    # --- Realtime publishing (consumed by the relay) ---
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_REALTIME_TOPIC: str = "realtime_events"
    REALTIME_PUBLISH_TIMEOUT_SECONDS: float = 3.0

    # --- Workflow ---
    COMMISSION_RATE: Decimal = Decimal("0.10")
    DUE_DATE_DAYS: int = 30
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 60
    MIGRATE_LEGACY_ON_STARTUP: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
