import os
from dotenv import load_dotenv

load_dotenv()

def _as_bool(v: str | None, default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}

class Settings:
    # App
    APP_NAME: str = os.getenv("APP_NAME", "libris")
    ENV: str = os.getenv("ENV", "dev")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    PORT: int = int(os.getenv("PORT", "8000"))

    # DB
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./libris.db")

    # Notificaciones: "log" (en proceso) o "database" (cola persistida + worker)
    NOTIFICATION_BACKEND: str = os.getenv("NOTIFICATION_BACKEND", "log").strip().lower()
    NOTIFY_ENQUEUE_TIMEOUT: float = float(os.getenv("NOTIFY_ENQUEUE_TIMEOUT", "2.0"))
    JOB_MAX_ATTEMPTS: int = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
    JOB_VISIBILITY_TIMEOUT: int = int(os.getenv("JOB_VISIBILITY_TIMEOUT", "300"))
    LOG_QUEUE_MAX_JOBS: int = int(os.getenv("LOG_QUEUE_MAX_JOBS", "1000"))

    # Habilitar/deshabilitar el worker de notificaciones
    ENABLE_NOTIFICATION_WORKER: bool = _as_bool(os.getenv("ENABLE_NOTIFICATION_WORKER"), False)
    WORKER_POLL_INTERVAL_SECONDS: int = int(os.getenv("WORKER_POLL_INTERVAL_SECONDS", "10"))

    # Préstamos
    DEFAULT_LOAN_DAYS: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    FINE_PER_DAY: float = float(os.getenv("FINE_PER_DAY", "0.5"))

settings = Settings()
