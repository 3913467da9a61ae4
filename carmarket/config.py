# carmarket/config.py
"""Environment-driven settings."""
import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./carmarket.db")

FREE_LISTING_LIMIT = int(os.getenv("FREE_LISTING_LIMIT", "5"))
LISTING_TTL_MONTHS = int(os.getenv("LISTING_TTL_MONTHS", "1"))
VERIFICATION_CODE_TTL_MINUTES = int(os.getenv("VERIFICATION_CODE_TTL_MINUTES", "10"))
SWEEP_INTERVAL_MINUTES = int(os.getenv("SWEEP_INTERVAL_MINUTES", "60"))

SCHEDULER_ENABLED = _flag("SCHEDULER_ENABLED", "1")
# development only; never enable where real SMS delivery exists
EXPOSE_VERIFICATION_CODES = _flag("EXPOSE_VERIFICATION_CODES", "0")
VERIFICATION_STORE = os.getenv("VERIFICATION_STORE", "memory")

# shared secrets for the payment-confirmation hook and admin actions;
# both endpoints refuse every call while unset
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")
