import os
from decimal import Decimal

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

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./therapy.db")
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
# Upper bound for a single store operation; exceeded operations surface as Unavailable.
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))

SEARCH_URL = os.getenv("SEARCH_URL", "http://localhost:9200")
SEARCH_INDEX_NAME = os.getenv("SEARCH_INDEX_NAME", "therapist_names")
SEARCH_TIMEOUT_SECONDS = float(os.getenv("SEARCH_TIMEOUT_SECONDS", "3"))
SEARCH_PAGE_SIZE = int(os.getenv("SEARCH_PAGE_SIZE", "15"))
SEARCH_MIN_PREFIX_LENGTH = int(os.getenv("SEARCH_MIN_PREFIX_LENGTH", "2"))
SEARCH_MAX_PREFIX_LENGTH = int(os.getenv("SEARCH_MAX_PREFIX_LENGTH", "15"))

OUTBOX_WORKER_ENABLED = _get_bool(os.getenv("OUTBOX_WORKER_ENABLED"), default=True)
OUTBOX_POLL_SECONDS = float(os.getenv("OUTBOX_POLL_SECONDS", "2"))
OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))
OUTBOX_BACKOFF_BASE_SECONDS = float(os.getenv("OUTBOX_BACKOFF_BASE_SECONDS", "1"))
OUTBOX_BACKOFF_MAX_SECONDS = float(os.getenv("OUTBOX_BACKOFF_MAX_SECONDS", "300"))
# Events failing this many times are dead-lettered and stop blocking later events.
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "10"))

DEFAULT_SESSION_FEE = Decimal(os.getenv("DEFAULT_SESSION_FEE", "500.00"))

DEFAULT_JWT_SECRET_KEY = "change-me-development-only-secret-key"
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", DEFAULT_JWT_SECRET_KEY)
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

CORS_ORIGINS = _get_list(os.getenv("CORS_ORIGINS"), ["http://localhost:8081"])


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == DEFAULT_JWT_SECRET_KEY:
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
