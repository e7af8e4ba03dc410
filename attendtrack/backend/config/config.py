import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("true", "on", "1")


def _env_list(name: str, default: str) -> list:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    """
    Settings read straight from environment variables, with development defaults.
    """
    # Document store
    APPLICATION_REDIS_URL: str = os.environ.get("APPLICATION_REDIS_URL", "redis://localhost:6379/0")
    RATE_LIMITER_REDIS_URL: str = os.environ.get("RATE_LIMITER_REDIS_URL", "memory://")

    # Compound indexes provisioned when the service starts ("*" = every declared one).
    # A declared index missing here raises IndexUnavailableError until it is ensured.
    READY_COMPOSITE_INDEXES: list = _env_list("READY_COMPOSITE_INDEXES", "*")

    # Tokens issued by the identity provider
    SECRET_KEY: str = os.environ.get("SECRET_KEY", "attendtrack-dev-secret")
    ALGORITHM: str = os.environ.get("ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", 60))

    # Attendance write path
    BATCH_WRITE_LIMIT: int = int(os.environ.get("BATCH_WRITE_LIMIT", 500))
    DUPLICATE_SCAN_LIMIT: int = int(os.environ.get("DUPLICATE_SCAN_LIMIT", 10))
    IMPORT_LOOKUP_CHUNK: int = int(os.environ.get("IMPORT_LOOKUP_CHUNK", 10))
    STRICT_DAILY_UNIQUENESS: bool = _env_bool("STRICT_DAILY_UNIQUENESS")

    # Identifiers
    QR_VALIDITY_HOURS: int = int(os.environ.get("QR_VALIDITY_HOURS", 24))
    BARCODE_RESERVATION_SECONDS: int = int(os.environ.get("BARCODE_RESERVATION_SECONDS", 60))

    # Sessions
    SESSION_IDLE_TIMEOUT_MINUTES: int = int(os.environ.get("SESSION_IDLE_TIMEOUT_MINUTES", 480))
    SESSION_SWEEP_INTERVAL_MINUTES: int = int(os.environ.get("SESSION_SWEEP_INTERVAL_MINUTES", 15))

    # Logging
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
    LOG_DIR: str = os.environ.get("LOG_DIR", "logs")


settings = Config()
