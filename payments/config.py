import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DEFAULT_FRONTEND_URL = "http://localhost:3000"


def database_url():
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    return url


def stripe_secret_key():
    return os.getenv("STRIPE_SECRET_KEY")


def stripe_webhook_secret():
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def stripe_api_version():
    return os.getenv("STRIPE_API_VERSION", "2023-10-16")


def stripe_timeout_seconds() -> float:
    return float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))


def checkout_session_ttl_minutes() -> int:
    # Stripe rejects expires_at less than 30 minutes out
    return max(int(os.getenv("CHECKOUT_SESSION_TTL_MINUTES", "30")), 30)


def frontend_url():
    return os.getenv("FRONTEND_URL", DEFAULT_FRONTEND_URL).rstrip("/")


def jwt_secret():
    return os.getenv("JWT_SECRET")


def log_level():
    return os.getenv("LOG_LEVEL", "INFO").upper()
