from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_TTL_SECONDS: int = 3600
    REFRESH_TOKEN_TTL_DAYS: int = 30
    REFRESH_TOKEN_ROTATE_ON_USE: bool = True
    REFRESH_TOKEN_RETENTION_DAYS: int = 30
    VAPID_PUBLIC_KEY: str = ""
    VAPID_PRIVATE_KEY: str = ""
    VAPID_SUBJECT: str = "mailto:admin@localhost"
    WEB_PUSH_TTL_SECONDS: int = 86400
    EXPO_PUSH_ENABLED: bool = True
    EXPO_ACCESS_TOKEN: str = ""
    PUSH_MAX_CONCURRENCY: int = 20
    PUSH_SEND_TIMEOUT_SECONDS: float = 5.0
    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore"
    )


settings = Settings()
