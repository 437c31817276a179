"""
juryboard/config/settings.py
Environment-driven runtime settings
"""
import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """Process-wide settings read once from the environment."""

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./juryboard.db")

    # Tokens are issued by the external auth service; we only verify them
    SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
    JWT_ALGORITHM: str = "HS256"

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Shared secret expected in X-Webhook-Secret on automation event ingress
    WEBHOOK_SECRET: str = os.getenv("AUTOMATION_WEBHOOK_SECRET", "dev-webhook-secret")

    AUTOMATION_TICK_SECONDS: float = float(os.getenv("AUTOMATION_TICK_SECONDS", "30"))
    INTEGRATION_TIMEOUT_SECONDS: float = float(os.getenv("INTEGRATION_TIMEOUT_SECONDS", "10"))

    PUBLIC_VOTE_RATE_LIMIT: str = os.getenv("PUBLIC_VOTE_RATE_LIMIT", "30/minute")

    ALLOWED_ORIGINS: List[str] = _split_csv(os.getenv("ALLOWED_ORIGINS", ""))


settings = Settings()
