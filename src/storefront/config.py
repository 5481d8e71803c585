"""Application configuration loaded from environment variables."""

import os
from dataclasses import dataclass, field

DEFAULT_DATABASE_URL = "sqlite:///./storefront.db"
DEFAULT_MERCADOPAGO_API_URL = "https://api.mercadopago.com"
DEFAULT_FRONTEND_URL = "http://localhost:5173"
DEFAULT_PUBLIC_URL = "http://localhost:8000"

# Local storefront dev servers
DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class Settings:
    """Runtime settings for the API, CLI and payment integrations."""

    database_url: str = DEFAULT_DATABASE_URL
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300  # seconds, 0 disables the timestamp check
    mercadopago_access_token: str = ""
    mercadopago_webhook_secret: str = ""
    mercadopago_api_url: str = DEFAULT_MERCADOPAGO_API_URL
    provider_timeout: float = 5.0
    frontend_url: str = DEFAULT_FRONTEND_URL  # checkout return pages
    public_url: str = DEFAULT_PUBLIC_URL  # where MercadoPago can reach this API
    statement_descriptor: str = "MERCADILLO"
    environment: str = "development"
    tax_rate: float = 0.18
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    @property
    def notification_url(self) -> str:
        return f"{self.public_url.rstrip('/')}/api/mercadopago/webhook"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ).
        """
        env = os.environ if environ is None else environ
        cors = env.get("CORS_ORIGINS")
        return cls(
            database_url=env.get("STOREFRONT_DATABASE_URL", DEFAULT_DATABASE_URL),
            stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET", ""),
            stripe_webhook_tolerance=int(env.get("STRIPE_WEBHOOK_TOLERANCE", "300")),
            mercadopago_access_token=env.get("MERCADOPAGO_ACCESS_TOKEN", ""),
            mercadopago_webhook_secret=env.get("MERCADOPAGO_WEBHOOK_SECRET", ""),
            mercadopago_api_url=env.get("MERCADOPAGO_API_URL", DEFAULT_MERCADOPAGO_API_URL),
            provider_timeout=float(env.get("PROVIDER_TIMEOUT", "5.0")),
            frontend_url=env.get("FRONTEND_URL", DEFAULT_FRONTEND_URL).rstrip("/"),
            public_url=env.get("STOREFRONT_PUBLIC_URL", DEFAULT_PUBLIC_URL).rstrip("/"),
            statement_descriptor=env.get("STATEMENT_DESCRIPTOR", "MERCADILLO"),
            environment=env.get("STOREFRONT_ENV", "development"),
            tax_rate=float(env.get("TAX_RATE", "0.18")),
            log_level=env.get("STOREFRONT_LOG_LEVEL", "INFO"),
            cors_origins=_split_csv(cors) if cors else list(DEFAULT_CORS_ORIGINS),
        )
