import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./medbook.db")
DATABASE_ISOLATION_LEVEL = os.getenv("DATABASE_ISOLATION_LEVEL", "SERIALIZABLE")
TRANSACTION_RETRY_ATTEMPTS = int(os.getenv("TRANSACTION_RETRY_ATTEMPTS", "3"))

CORS_ALLOW_ORIGINS = _get_list(os.getenv("CORS_ALLOW_ORIGINS"), ["http://localhost:4200"])

BOOKING_HORIZON_DAYS = int(os.getenv("BOOKING_HORIZON_DAYS", "30"))
APPOINTMENT_EXPIRY_HOURS = int(os.getenv("APPOINTMENT_EXPIRY_HOURS", "24"))
DEFAULT_SLOT_CAPACITY = int(os.getenv("DEFAULT_SLOT_CAPACITY", "1"))
REQUIRE_VERIFIED_PRACTITIONER = _get_bool(os.getenv("REQUIRE_VERIFIED_PRACTITIONER"), default=False)
NOTIFICATION_MODE = os.getenv("NOTIFICATION_MODE", "immediate").strip().lower()

DEFAULT_JWT_SECRET_KEY = "change-me-local-development-signing-key"
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", DEFAULT_JWT_SECRET_KEY)
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == DEFAULT_JWT_SECRET_KEY:
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if NOTIFICATION_MODE not in {"immediate", "deferred"}:
        raise RuntimeError("NOTIFICATION_MODE must be 'immediate' or 'deferred'.")
    if BOOKING_HORIZON_DAYS < 0 or APPOINTMENT_EXPIRY_HOURS <= 0:
        raise RuntimeError("Booking horizon and expiry timeout must be positive.")
