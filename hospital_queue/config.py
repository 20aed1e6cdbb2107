# hospital_queue/config.py
import os

from dotenv import find_dotenv, load_dotenv

# find_dotenv walks up from the working directory, so the app and the
# tests pick up the same .env wherever they are launched from.
load_dotenv(find_dotenv())


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _database_url() -> str:
    """DATABASE_URL wins; otherwise a MySQL URL when DB_HOST is set, else a local SQLite file."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    if os.getenv("DB_HOST"):
        return (
            f"mysql+pymysql://{os.getenv('DB_USER', 'root')}:"
            f"{os.getenv('DB_PASSWORD', '')}"
            f"@{os.getenv('DB_HOST')}:{os.getenv('DB_PORT', '3306')}/"
            f"{os.getenv('DB_NAME', 'hospital_queue')}"
        )
    return "sqlite:///./hospital_queue.db"


class Settings:
    DATABASE_URL: str = _database_url()

    # --- Security (token issuing lives outside this service) ---
    SECRET_KEY: str = os.getenv("SECRET_KEY", "change-me-in-production")
    ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

    # --- Queue engine ---
    QUEUE_RETRY_LIMIT: int = int(os.getenv("QUEUE_RETRY_LIMIT", "5"))
    MINUTES_PER_TOKEN: int = int(os.getenv("MINUTES_PER_TOKEN", "10"))

    # --- Inactivity monitor ---
    INACTIVITY_MONITOR_ENABLED: bool = _env_bool("INACTIVITY_MONITOR_ENABLED", True)
    INACTIVITY_INTERVAL_SECONDS: float = float(os.getenv("INACTIVITY_INTERVAL_SECONDS", "30"))
    INACTIVITY_THRESHOLD_MINUTES: float = float(os.getenv("INACTIVITY_THRESHOLD_MINUTES", "10"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def LOGGING_CONFIG(self) -> dict:
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {
                "hospital_queue": {
                    "handlers": ["console"],
                    "level": self.LOG_LEVEL,
                    "propagate": False,
                },
            },
        }


settings = Settings()
