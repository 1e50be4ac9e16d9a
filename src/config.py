from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # Database
    DATABASE_URL: Optional[str] = None
    PGHOST: Optional[str] = None
    PGDATABASE: Optional[str] = None
    PGUSER: Optional[str] = None
    PGPASSWORD: Optional[str] = None
    PGSSLMODE: str = "require"

    # Security
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"

    # Application
    PROJECT_NAME: str = "Bus Ticket Reservation System"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["http://localhost:8081", "http://localhost:3000"]

    # Reservations
    RESERVATION_TTL_HOURS: int = 2
    MAX_PASSENGERS_PER_RESERVATION: int = 10

    # Khalti payment gateway
    KHALTI_BASE_URL: str = "https://a.khalti.com/api/v2"
    KHALTI_SECRET_KEY: str = ""
    KHALTI_TIMEOUT_SECONDS: float = 10.0
    WEBSITE_URL: str = "http://localhost:8081"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if self.PGHOST:
            return f"postgresql://{self.PGUSER}:{self.PGPASSWORD}@{self.PGHOST}/{self.PGDATABASE}?sslmode={self.PGSSLMODE}"
        return "sqlite:///./bus_tickets.db"

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
