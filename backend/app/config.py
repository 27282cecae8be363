from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Redis presence TTL cache only. Empty string disables it; presence then
    # lives in the database columns alone.
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_PRESENCE_TTL: int = 300  # seconds; key expires if heartbeat stops

    # Used to namespace Redis keys when several deployments share one Redis.
    SERVER_DOMAIN: str = "localhost"

    # Messaging
    MESSAGE_MAX_LENGTH: int = 4000

    # Receivers clear a typing indicator after this many quiet seconds.
    TYPING_QUIET_SECONDS: float = 3.0

    # A call still ringing after this many seconds becomes "missed". 0 disables.
    CALL_RING_TIMEOUT_SECONDS: float = 45.0

    model_config = {"env_file": ".env"}


settings = Settings()
