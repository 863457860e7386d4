import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Telnyx (SMS + voice) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_PUBLIC_KEY = os.environ.get("TELNYX_PUBLIC_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER")
    TELNYX_CONNECTION_ID = os.environ.get("TELNYX_CONNECTION_ID")

    # --- SendGrid (email) ---
    SENDGRID_API_KEY = os.environ.get("SENDGRID_API_KEY")
    SENDGRID_FROM_EMAIL = os.environ.get("SENDGRID_FROM_EMAIL")
    SENDGRID_API_URL = os.environ.get("SENDGRID_API_URL", "https://api.sendgrid.com/v3/mail/send")

    # --- Escalation policy ---
    ENABLE_CAREGIVER_CALLS = _flag("ENABLE_CAREGIVER_CALLS")
    ESCALATION_MINUTES = int(os.environ.get("ESCALATION_MINUTES", "60"))
    REPLY_LOOKBACK_MINUTES = int(os.environ.get("REPLY_LOOKBACK_MINUTES", "120"))
    DELIVERY_TIMEOUT_SECONDS = float(os.environ.get("DELIVERY_TIMEOUT_SECONDS", "10"))
    ALERT_SUBJECT = os.environ.get("ALERT_SUBJECT", "Reminder alert")

    # --- Job cadence (seconds) and cron trigger auth ---
    JOBS_TOKEN = os.environ.get("JOBS_TOKEN")
    CONFIRMATION_JOB_INTERVAL = float(os.environ.get("CONFIRMATION_JOB_INTERVAL", "900"))
    ESCALATION_JOB_INTERVAL = float(os.environ.get("ESCALATION_JOB_INTERVAL", "300"))

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

settings = Settings()
