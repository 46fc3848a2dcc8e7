import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


class Settings:
    """Centralised application configuration sourced from environment variables."""

    def __init__(self) -> None:
        load_dotenv()
        self.database_path = Path(os.getenv("DATABASE_PATH", "data/subscriptions.db")).resolve()
        self.auth_token_secret = os.getenv("AUTH_TOKEN_SECRET", "change-me")
        self.order_service_url = os.getenv("ORDER_SERVICE_URL", "http://localhost:8080/api")
        self.order_service_token = os.getenv("ORDER_SERVICE_TOKEN")
        self.order_service_timeout = self._get_int("ORDER_SERVICE_TIMEOUT", default=30)
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.renewal_run_at = os.getenv("RENEWAL_RUN_AT", "00:00")
        self.renewal_scheduler_enabled = self._get_bool("RENEWAL_SCHEDULER_ENABLED", default=True)
        origins = os.getenv("CORS_ALLOW_ORIGINS")
        if origins:
            self.cors_allow_origins = [item.strip() for item in origins.split(",") if item.strip()]
        else:
            self.cors_allow_origins = ["*"]

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise RuntimeError(f"Missing required environment variable: {key}")
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be an integer") from exc

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        value = os.getenv(key)
        if value is None:
            return default
        normalized = value.strip().lower()
        if normalized in ("1", "true", "yes", "on"):
            return True
        if normalized in ("0", "false", "no", "off", ""):
            return False
        raise RuntimeError(f"Environment variable {key} must be a boolean")
