"""
Runtime configuration.

Values come from the process environment (optionally seeded from a .env file).
Modules read `settings` at call time, so tests can adjust attributes in place.
"""
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_list(name: str, default: str) -> List[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


@dataclass
class Settings:
    app_env: str = "development"
    log_level: str = "INFO"
    port: int = 8000
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])

    # MongoDB
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "bloomshop"
    db_timeout_ms: int = 5000

    # Identity provider tokens (HS256 shared secret)
    jwt_secret: str = "devsecret_change_me"
    jwt_audience: str = ""

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secrets: List[str] = field(default_factory=list)
    stripe_timeout_seconds: int = 20
    stripe_max_retries: int = 2
    app_base_url: str = "http://localhost:3000"
    default_currency: str = "CAD"

    # PrintNode
    printnode_api_key: str = ""
    printnode_printer_id: str = ""
    printnode_base_url: str = "https://api.printnode.com"
    print_timeout_seconds: int = 15

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        secrets = [
            os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            os.getenv("STRIPE_WEBHOOK_SECRET_TEST", ""),
            os.getenv("STRIPE_WEBHOOK_SECRET_LIVE", ""),
        ]
        return cls(
            app_env=os.getenv("APP_ENV", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", "8000")),
            allowed_origins=_env_list("ALLOWED_ORIGINS", "*"),
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "bloomshop"),
            db_timeout_ms=int(os.getenv("DB_TIMEOUT_MS", "5000")),
            jwt_secret=os.getenv("JWT_SECRET", "devsecret_change_me"),
            jwt_audience=os.getenv("JWT_AUDIENCE", ""),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secrets=[s for s in secrets if s],
            stripe_timeout_seconds=int(os.getenv("STRIPE_TIMEOUT_SECONDS", "20")),
            stripe_max_retries=int(os.getenv("STRIPE_MAX_RETRIES", "2")),
            app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
            default_currency=os.getenv("DEFAULT_CURRENCY", "CAD"),
            printnode_api_key=os.getenv("PRINTNODE_API_KEY", ""),
            printnode_printer_id=os.getenv("PRINTNODE_PRINTER_ID", ""),
            printnode_base_url=os.getenv("PRINTNODE_BASE_URL", "https://api.printnode.com").rstrip("/"),
            print_timeout_seconds=int(os.getenv("PRINT_TIMEOUT_SECONDS", "15")),
        )


settings = Settings.from_env()
