import os
import sys
from pathlib import Path
from dotenv import load_dotenv

# In case pytest tests/ -v -s is run, it will only read .env.test
if "pytest" in sys.modules or os.environ.get("TESTING") == "True":
    test_env_path = Path(__file__).parent.parent / "tests" / ".env.test"
    if test_env_path.exists():
        load_dotenv(test_env_path, override=True)
else:
    load_dotenv()

TESTING = os.environ.get("TESTING") == "True" or "pytest" in sys.modules
FLASK_ENV = os.environ.get("FLASK_ENV")


def is_production_database(db_url: str) -> bool:
    """Check if a database URL appears to be production."""
    if not db_url:
        return False

    dangerous_patterns = [
        "rlwy.net",
        "railway.internal",
        "production",
        "live",
        "amazonaws.com",
        "azure.com",
    ]

    for pattern in dangerous_patterns:
        if pattern in db_url.lower():
            return True
    return False


def env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def resolve_database_url() -> str:
    if TESTING or FLASK_ENV == "testing":
        url = os.environ.get("DATABASE_TEST_URL", "sqlite:///salon_booking_test.db")
        # Never let a test run touch a production database
        if is_production_database(url):
            raise RuntimeError(
                "Refusing to run tests against what looks like a production database"
            )
        return url

    url = os.environ.get("DATABASE_URL")
    if not url:
        if FLASK_ENV == "development":
            return "sqlite:///salon_booking.db"
        raise ValueError("DATABASE_URL environment variable is required for production")

    # Fix MySQL URL format if needed
    if url.startswith("mysql://"):
        url = url.replace("mysql://", "mysql+pymysql://", 1)
    return url


class Config:
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get("SECRET_KEY", "supersecretdevkey123")

    TESTING = TESTING

    # Reservation path
    RESERVATION_LOCK_TIMEOUT = float(os.environ.get("RESERVATION_LOCK_TIMEOUT", 5))

    # Reminder scheduler
    SCHEDULER_ENABLED = env_bool("SCHEDULER_ENABLED", not TESTING)
    REMINDER_SCAN_INTERVAL_MINUTES = int(
        os.environ.get("REMINDER_SCAN_INTERVAL_MINUTES", 5)
    )
    REMINDER_SCAN_WINDOW_MINUTES = int(os.environ.get("REMINDER_SCAN_WINDOW_MINUTES", 60))
    REMINDER_CYCLE_DEADLINE_SECONDS = int(
        os.environ.get("REMINDER_CYCLE_DEADLINE_SECONDS", 240)
    )
    NOTIFY_MAX_ATTEMPTS = int(os.environ.get("NOTIFY_MAX_ATTEMPTS", 3))
    NOTIFY_BACKOFF_SECONDS = float(os.environ.get("NOTIFY_BACKOFF_SECONDS", 1.0))

    # Notification channels
    NOTIFY_TEST_MODE = env_bool("NOTIFY_TEST_MODE", TESTING)
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    RESEND_FROM_EMAIL = os.environ.get("RESEND_FROM_EMAIL", "onboarding@resend.dev")
    TWILIO_ACCOUNT_SID = os.environ.get("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN")
    TWILIO_WHATSAPP_FROM = os.environ.get("TWILIO_WHATSAPP_FROM")

    def __init__(self):
        self.SQLALCHEMY_DATABASE_URI = resolve_database_url()
        if self.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
            # Let concurrent writers wait on the file lock instead of failing
            self.SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 15}}

    @property
    def is_safe_for_testing(self):
        """Double-check that we're not using production database in tests."""
        if self.TESTING:
            return not is_production_database(self.SQLALCHEMY_DATABASE_URI)
        return True
