import logging
import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        self.jwt_secret = os.getenv("JWT_SECRET", "")
        self.jwt_algorithm = os.getenv("JWT_ALGORITHM", "HS256")

        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY", "")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        self.stripe_webhook_tolerance = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))

        self.paypal_base_url = os.getenv("PAYPAL_BASE_URL", "https://api-m.sandbox.paypal.com")
        self.paypal_client_id = os.getenv("PAYPAL_CLIENT_ID", "")
        self.paypal_secret = os.getenv("PAYPAL_SECRET", "")
        self.paypal_webhook_id = os.getenv("PAYPAL_WEBHOOK_ID", "")
        self.paypal_return_url = os.getenv("PAYPAL_RETURN_URL", "https://example.com/payment/success")
        self.paypal_cancel_url = os.getenv("PAYPAL_CANCEL_URL", "https://example.com/payment/cancel")
        self.paypal_token_safety_margin = int(os.getenv("PAYPAL_TOKEN_SAFETY_MARGIN", "300"))

        self.http_timeout_seconds = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))
        self.default_location_code = os.getenv("DEFAULT_LOCATION_CODE", "GB")

        self.notify_email_enabled = _flag("NOTIFY_EMAIL_ENABLED", True)
        self.notify_sms_enabled = _flag("NOTIFY_SMS_ENABLED")
        self.notify_whatsapp_enabled = _flag("NOTIFY_WHATSAPP_ENABLED")


settings = Settings()


def configure_logging(level: str = None):
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
