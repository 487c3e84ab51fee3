from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # --- Realtime events published by the workflow service ---
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_REALTIME_TOPIC: str = "realtime_events"
    KAFKA_RETRY_SECONDS: float = 1.0
    KAFKA_RETRY_MAX_SECONDS: float = 30.0

    # --- Message store (the workflow service chat endpoints) ---
    STORE_API_URL: str = "http://adbooking:8000"
    SERVICE_TOKEN: str = "relay-dev-token"
    STORE_TIMEOUT_SECONDS: float = 5.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
