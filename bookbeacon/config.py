import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")
    cors_origins: List[str] = field(
        default_factory=lambda: [
            o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:8080").split(",") if o.strip()
        ]
    )

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "10"))

    # Lending rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    max_books_per_member: int = int(os.getenv("MAX_BOOKS_PER_MEMBER", "3"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "1.0"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Book Beacon")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
