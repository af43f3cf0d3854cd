import os

from dotenv import load_dotenv

load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None or not value.strip():
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATA_DIR = os.getenv("DATA_DIR", os.getcwd())
CORS_ORIGINS = _get_list(os.getenv("CORS_ORIGINS"), ["http://localhost:3000"])

PRACTICE_TIMEZONE = os.getenv("PRACTICE_TIMEZONE", "Europe/Lisbon")
# Monday is 0, so Tuesday and Thursday are 1 and 3.
WORKING_WEEKDAYS = [int(day) for day in _get_list(os.getenv("WORKING_WEEKDAYS"), ["1", "3"])]
TEMPLATE_SLOT_TIMES = _get_list(os.getenv("TEMPLATE_SLOT_TIMES"), ["19:00", "21:00", "22:00", "23:00"])
AVAILABILITY_HORIZON_WEEKS = int(os.getenv("AVAILABILITY_HORIZON_WEEKS", "12"))
DEFAULT_BOOKING_RANGE_DAYS = int(os.getenv("DEFAULT_BOOKING_RANGE_DAYS", "28"))

PENDING_BOOKING_TTL_HOURS = int(os.getenv("PENDING_BOOKING_TTL_HOURS", "24"))
TOKEN_VALIDITY_MONTHS = int(os.getenv("TOKEN_VALIDITY_MONTHS", "3"))
MEDICAL_RETENTION_YEARS = int(os.getenv("MEDICAL_RETENTION_YEARS", "10"))

ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "")

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

ADMIN_EMAILS = [email.lower() for email in _get_list(os.getenv("ADMIN_EMAILS"), [])]
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_REFRESH_TOKEN = os.getenv("GOOGLE_REFRESH_TOKEN", "")
GOOGLE_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID", "primary")
DOCTOR_EMAIL = os.getenv("DOCTOR_EMAIL", "")

PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
PAYPAL_ENVIRONMENT = os.getenv("PAYPAL_ENVIRONMENT", "sandbox")
PAYPAL_CURRENCY = os.getenv("PAYPAL_CURRENCY", "EUR")

BOOKING_BASE_URL = os.getenv("BOOKING_BASE_URL", "http://localhost:3000/booking")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))
SEND_EMAILS = _get_bool(os.getenv("SEND_EMAILS"), default=True)


def validate_runtime_config() -> None:
    if APP_ENV.lower() != "production":
        return
    if JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if not ENCRYPTION_KEY:
        raise RuntimeError("ENCRYPTION_KEY must be set in production.")
