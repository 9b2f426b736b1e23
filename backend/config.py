"""Runtime configuration read from environment (.env supported)."""
from dataclasses import dataclass, field
from pathlib import Path
from typing import List
from dotenv import load_dotenv
import os

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Placeholder webhook secrets shipped in sample envs; treated as "not configured"
DUMMY_WEBHOOK_SECRETS = ("whsec_dummy", "whsec_test_dummy", "whsec_xxx")


def _stripe_secret_key() -> str:
    return (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


@dataclass(frozen=True)
class Settings:
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "payments"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    frontend_url: str = "http://localhost:5173"
    space_url: str = "http://localhost:5403"
    space_api_key: str = ""
    space_service_name: str = "socialbeats"
    internal_api_key: str = ""
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    entitlement_sync_interval_seconds: int = 30
    environment: str = "development"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongo_url=os.getenv("MONGO_URL", "mongodb://localhost:27017"),
            db_name=os.getenv("DB_NAME", "payments"),
            stripe_secret_key=_stripe_secret_key(),
            stripe_webhook_secret=(os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip(),
            frontend_url=(os.getenv("FRONTEND_URL") or "http://localhost:5173").rstrip("/"),
            space_url=(os.getenv("SPACE_URL") or "http://localhost:5403").rstrip("/"),
            space_api_key=os.getenv("SPACE_API_KEY", ""),
            space_service_name=os.getenv("SPACE_SERVICE_NAME", "socialbeats"),
            internal_api_key=os.getenv("INTERNAL_API_KEY", ""),
            cors_origins=os.getenv("CORS_ORIGINS", "*").split(","),
            entitlement_sync_interval_seconds=int(os.getenv("ENTITLEMENT_SYNC_INTERVAL_SECONDS", "30")),
            environment=os.getenv("ENVIRONMENT", "development"),
        )

    @property
    def webhook_verification_enabled(self) -> bool:
        secret = self.stripe_webhook_secret
        return bool(secret) and not secret.startswith(DUMMY_WEBHOOK_SECRETS)
