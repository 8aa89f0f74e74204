import os
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


class Settings(BaseModel):
    """Process-wide configuration, read once at startup and passed explicitly."""

    environment: str = "development"
    port: int = 5000
    log_level: str = "INFO"

    # Daraja credentials; checked lazily when a call needs them
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    passkey: Optional[str] = None
    shortcode: Optional[str] = None
    callback_url: Optional[str] = None

    allowed_origin: Optional[str] = None
    rate_limit: str = "100 per 15 minutes"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(find_dotenv(usecwd=True))
        return cls(
            environment=_env("APP_ENVIRONMENT", "development").lower(),
            port=int(_env("PORT", "5000")),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            consumer_key=_env("MPESA_CONSUMER_KEY"),
            consumer_secret=_env("MPESA_CONSUMER_SECRET"),
            passkey=_env("MPESA_PASSKEY"),
            shortcode=_env("MPESA_SHORTCODE"),
            callback_url=_env("MPESA_CALLBACK_URL"),
            allowed_origin=_env("ALLOWED_ORIGIN"),
            rate_limit=_env("RATE_LIMIT", "100 per 15 minutes"),
        )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def api_base_url(self) -> str:
        return PRODUCTION_BASE_URL if self.is_production else SANDBOX_BASE_URL

    @property
    def cors_origins(self):
        if self.is_production:
            return [self.allowed_origin] if self.allowed_origin else []
        return ["*"]
