import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings(BaseModel):
    database_url: str | None = None
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None

    ali_app_key: str | None = None
    ali_app_secret: str | None = None
    ali_redirect_uri: str | None = None
    ali_api_url: str = "https://api-sg.aliexpress.com/sync"
    ali_token_url: str = "https://api-sg.aliexpress.com/rest/auth/token/create"
    ali_refresh_url: str = "https://api.aliexpress.com/auth/token/security/refresh"
    ali_auth_url: str = "https://api-sg.aliexpress.com/oauth/authorize"
    ali_test_environment: bool = False

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_pass: str | None = None
    email_from: str | None = None
    support_email: str = "support@zen-essentials.store"
    google_maps_key: str | None = None

    jwt_secret: str | None = None
    token_refresh_interval_seconds: int = 0
    log_level: str = "INFO"
    log_json: bool = True


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


def get_settings() -> Settings:
    """Snapshot of the environment; read on every call so tests can patch it."""
    env = {
        "database_url": os.getenv("DATABASE_URL"),
        "stripe_secret_key": os.getenv("STRIPE_SECRET_KEY"),
        "stripe_webhook_secret": (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip() or None,
        "ali_app_key": os.getenv("ALI_APP_KEY"),
        "ali_app_secret": os.getenv("ALI_APP_SECRET"),
        "ali_redirect_uri": os.getenv("ALI_REDIRECT_URI"),
        "ali_api_url": os.getenv("ALI_API_URL"),
        "ali_token_url": os.getenv("ALI_TOKEN_URL"),
        "ali_refresh_url": os.getenv("ALI_REFRESH_URL"),
        "ali_auth_url": os.getenv("ALI_AUTH_URL"),
        "smtp_host": os.getenv("SMTP_HOST"),
        "smtp_port": os.getenv("SMTP_PORT"),
        "smtp_user": os.getenv("SMTP_USER"),
        "smtp_pass": os.getenv("SMTP_PASS"),
        "email_from": os.getenv("EMAIL_FROM"),
        "support_email": os.getenv("SUPPORT_EMAIL"),
        "google_maps_key": os.getenv("GOOGLE_MAPS_KEY"),
        "jwt_secret": os.getenv("JWT_SECRET"),
        "token_refresh_interval_seconds": os.getenv("TOKEN_REFRESH_INTERVAL_SECONDS"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    # unset variables fall back to the model defaults
    values = {k: v for k, v in env.items() if v not in (None, "")}
    values["ali_test_environment"] = _flag("ALI_TEST_ENVIRONMENT")
    if os.getenv("LOG_JSON") is not None:
        values["log_json"] = _flag("LOG_JSON")
    return Settings(**values)
