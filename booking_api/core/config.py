import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
APP_NAME = os.getenv("APP_NAME", "api-agendamento-v2")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG" if APP_ENV == "development" else "INFO")

DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/Sao_Paulo")
DEFAULT_SLOT_STEP_MINUTES = int(os.getenv("DEFAULT_SLOT_STEP_MINUTES", "15"))
DEFAULT_CLOSING_TIME = os.getenv("DEFAULT_CLOSING_TIME", "18:00")

FRONTEND_ORIGINS = _get_list(os.getenv("FRONTEND_ORIGIN"))
CORS_ALLOWED_ORIGINS = ["https://editor.weweb.io", *FRONTEND_ORIGINS]
CORS_ORIGIN_REGEX = os.getenv("CORS_ORIGIN_REGEX", r"https://.*\.weweb\.app")
CORS_MAX_AGE_SECONDS = int(os.getenv("CORS_MAX_AGE_SECONDS", "86400"))

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

API_KEY_PREFIX = os.getenv("API_KEY_PREFIX", "agd_live_")
API_KEY_TRACK_USAGE = _get_bool(os.getenv("API_KEY_TRACK_USAGE"), default=True)


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
