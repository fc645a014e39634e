import logging
import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    # Database
    database_url: str

    # Server
    port: int = 8000
    environment: str = "development"
    app_base_url: str = "http://localhost:5173"

    # Redis (notification pub/sub)
    redis_url: str = "redis://localhost:6379/0"

    # Auth
    jwt_secret_key: str = ""
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 30

    # Email (MailerSend)
    mailersend_api_key: Optional[str] = None
    mailersend_from_email: str = "onboarding@innkeeper-hr.com"
    mailersend_from_name: str = "Innkeeper HR"
    hr_notification_emails: tuple[str, ...] = field(default_factory=tuple)

    # Storage
    s3_bucket: Optional[str] = None
    s3_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    cloudfront_domain: Optional[str] = None

    # Onboarding
    offer_token_expire_hours: int = 72
    walkin_code_expire_hours: int = 120
    access_code_length: int = 6
    min_hourly_rate: float = 7.25

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


# Global settings instance
_settings: Optional[Settings] = None


def _split_emails(raw: str) -> tuple[str, ...]:
    return tuple(
        email.strip().lower()
        for email in raw.split(",")
        if email.strip()
    )


def load_settings() -> Settings:
    global _settings
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    # JWT settings
    jwt_secret_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_secret_key:
        # Generate a default for development, but warn
        import secrets
        jwt_secret_key = secrets.token_urlsafe(32)
        logger.warning("[Config] JWT_SECRET_KEY not set. Using random key (tokens won't survive restarts)")

    _settings = Settings(
        database_url=database_url.strip().strip('"'),
        port=int(os.getenv("PORT", "8000")),
        environment=os.getenv("ENVIRONMENT", "development"),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:5173").rstrip("/"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        jwt_secret_key=jwt_secret_key,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        jwt_access_token_expire_minutes=int(os.getenv("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", "30")),
        mailersend_api_key=os.getenv("MAILERSEND_API_KEY") or None,
        mailersend_from_email=os.getenv("MAILERSEND_FROM_EMAIL", "onboarding@innkeeper-hr.com"),
        mailersend_from_name=os.getenv("MAILERSEND_FROM_NAME", "Innkeeper HR"),
        hr_notification_emails=_split_emails(os.getenv("HR_NOTIFICATION_EMAILS", "")),
        s3_bucket=os.getenv("S3_BUCKET") or None,
        s3_region=os.getenv("S3_REGION", "us-east-1"),
        aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        cloudfront_domain=os.getenv("CLOUDFRONT_DOMAIN") or None,
        offer_token_expire_hours=int(os.getenv("OFFER_TOKEN_EXPIRE_HOURS", "72")),
        walkin_code_expire_hours=int(os.getenv("WALKIN_CODE_EXPIRE_HOURS", "120")),
        access_code_length=int(os.getenv("ACCESS_CODE_LENGTH", "6")),
        min_hourly_rate=float(os.getenv("MIN_HOURLY_RATE", "7.25")),
    )
    return _settings


def get_settings() -> Settings:
    """Get the loaded settings. Must call load_settings() first."""
    global _settings
    if _settings is None:
        raise RuntimeError("Settings not initialized. Call load_settings() first.")
    return _settings
