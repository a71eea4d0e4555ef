from pydantic_settings import BaseSettings
from typing import List
import os


class Settings(BaseSettings):
    # App Configuration
    APP_NAME: str = "LessonLink API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    APP_URL: str = "http://localhost:3000"

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # CORS
    ALLOWED_HOSTS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Database (Neon)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./lessonlink.db")
    DATABASE_ECHO: bool = False

    # Authentication
    SECRET_KEY: str = os.getenv("SECRET_KEY", "your-secret-key-here")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 120

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    PAYMENT_LINK_EXPIRY_HOURS: int = 24

    # Billing
    CURRENCY: str = "eur"

    # Booking policy
    TUTOR_TIMEZONE: str = "UTC"
    LATE_RESCHEDULE_HOURS: int = 12
    LATE_CANCEL_HOURS: int = 24

    # Credit ledger
    LEDGER_MAX_RETRIES: int = 5

    # Lessons cancelled after their package expired give the hours up
    # instead of returning them to the uncommitted pool.
    # Provisional default until the cancellation policy is settled.
    FORFEIT_HOURS_ON_EXPIRED_CANCEL: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True


# Create settings instance
settings = Settings()

# Update allowed hosts for production
if os.getenv("ENVIRONMENT") == "production":
    settings.ALLOWED_HOSTS.extend([
        "https://lessonlink.vercel.app"
    ])
