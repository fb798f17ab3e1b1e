import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class CirculationSettings:
    """Circulation rules handed to the coordinator on every operation."""

    fine_per_day: int = 10
    max_active_loans_per_student: int = 4
    loan_duration_days: int = 14

    def __post_init__(self) -> None:
        if self.fine_per_day < 0:
            raise ValueError("fine_per_day cannot be negative")
        if self.max_active_loans_per_student < 1:
            raise ValueError("max_active_loans_per_student must be at least 1")
        if self.loan_duration_days < 1:
            raise ValueError("loan_duration_days must be at least 1")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "libsync.db")
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "5"))

    # Circulation rules
    fine_per_day: int = int(os.getenv("FINE_PER_DAY", "10"))
    max_active_loans_per_student: int = int(os.getenv("MAX_ACTIVE_LOANS_PER_STUDENT", "4"))
    loan_duration_days: int = int(os.getenv("LOAN_DURATION_DAYS", "14"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "LibSync Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def circulation(self) -> CirculationSettings:
        return CirculationSettings(
            fine_per_day=self.fine_per_day,
            max_active_loans_per_student=self.max_active_loans_per_student,
            loan_duration_days=self.loan_duration_days,
        )


settings = Settings()
