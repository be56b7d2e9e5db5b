import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

from circulation.policy import CirculationPolicy

load_dotenv()


@dataclass
class Settings:
    # API
    app_name: str = os.getenv("APP_NAME", "Library Circulation API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: List[str] = field(
        default_factory=lambda: [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
            if origin.strip()
        ]
    )
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Storage
    storage_backend: str = os.getenv("STORAGE_BACKEND", "mongo")
    mongodb_url: str = os.getenv("MONGODB_URL", "mongodb://mongo:27017")
    mongodb_db: str = os.getenv("MONGODB_DB", "library_db")

    # Circulation policy
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    max_renewals: int = int(os.getenv("MAX_RENEWALS", "2"))
    max_active_loans: int = int(os.getenv("MAX_ACTIVE_LOANS", "5"))
    daily_fine_rate: float = float(os.getenv("DAILY_FINE_RATE", "1"))

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "12"))

    def policy(self) -> CirculationPolicy:
        return CirculationPolicy(
            loan_period_days=self.loan_period_days,
            max_renewals=self.max_renewals,
            max_active_loans_per_patron=self.max_active_loans,
            daily_fine_rate=self.daily_fine_rate,
        )


settings = Settings()
