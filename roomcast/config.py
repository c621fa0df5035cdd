import os
from typing import List
import dotenv
from typing import Optional

dotenv.load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./roomcast.db")

    # JWT Security
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

    # CORS Settings
    ALLOWED_ORIGINS: List[str] = [
        origin.strip()
        for origin in os.getenv(
            "ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:5173"
        ).split(",")
        if origin.strip()
    ]

    # App Settings
    APP_NAME: str = os.getenv("APP_NAME", "roomcast")
    DEBUG: bool = _env_bool("DEBUG", "False")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE") or None

    # Bootstrap owner account (change in production!)
    ADMIN_USERNAME: str = os.getenv("ADMIN_USERNAME", "owner")
    ADMIN_PASSWORD: str = os.getenv("ADMIN_PASSWORD", "owner123")

    # Chat engine
    REQUIRE_APPROVAL: bool = _env_bool("REQUIRE_APPROVAL", "False")
    DEFAULT_CHANNEL: str = os.getenv("DEFAULT_CHANNEL", "general")
    BACKLOG_LIMIT: int = int(os.getenv("BACKLOG_LIMIT", "200"))  # 0 = unbounded
    MAX_MESSAGE_LENGTH: int = int(os.getenv("MAX_MESSAGE_LENGTH", "1000"))
    AUTH_TIMEOUT_SECONDS: float = float(os.getenv("AUTH_TIMEOUT_SECONDS", "10"))
    RATE_LIMIT_EVENTS: int = int(os.getenv("RATE_LIMIT_EVENTS", "20"))  # 0 = disabled
    RATE_LIMIT_WINDOW_SECONDS: float = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "5"))
    PERSIST_MAX_RETRIES: int = int(os.getenv("PERSIST_MAX_RETRIES", "3"))

    # Room extras
    BOT_ENABLED: bool = _env_bool("BOT_ENABLED", "True")
    BOT_NAME: str = os.getenv("BOT_NAME", "HeimBot")
    MAX_POLL_OPTIONS: int = int(os.getenv("MAX_POLL_OPTIONS", "10"))


settings = Settings()
