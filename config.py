"""
Configuration management for DoseLedger
"""

from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "DoseLedger"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENV: str = "development"

    # API
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite:///./dose_ledger.db"
    DATABASE_ECHO: bool = False

    # Identity verification (bearer credential -> subject id)
    IDENTITY_VERIFY_URL: Optional[str] = None
    IDENTITY_TIMEOUT_SECONDS: float = 5.0

    # Scheduled job trigger
    JOB_TRIGGER_TOKEN: Optional[str] = None
    JOB_TIME_BUDGET_SECONDS: int = 240

    # Email gateway (SendGrid)
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_FROM_EMAIL: str = "noreply@doseledger.app"

    # SMS gateway (Twilio)
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_PHONE_NUMBER: Optional[str] = None

    # Push gateway (FCM)
    FCM_SERVER_KEY: Optional[str] = None

    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Notification delivery
    NOTIFICATION_MAX_RETRIES: int = 3
    NOTIFICATION_BACKOFF_MINUTES: int = 5
    NOTIFICATION_SENDING_TIMEOUT_MINUTES: int = 15
    NOTIFICATION_BATCH_SIZE: int = 100
    REMINDER_LOOKBACK_MINUTES: int = 15

    # Event log
    CONFLICT_MAX_RETRIES: int = 3
    UNDO_WINDOW_HOURS: int = 24

    # Analytics
    PATTERN_CONSECUTIVE_MISSED: int = 3
    PATTERN_WEEKEND_GAP_POINTS: float = 15.0
    PATTERN_TREND_DECLINE_POINTS: float = 5.0
    PATTERN_WINDOW_DAYS: int = 14

    # Archival
    ARCHIVE_BATCH_SIZE: int = 500

    # Patient defaults
    DEFAULT_TIMEZONE: str = "America/Chicago"
    HOLIDAYS: list[str] = []

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Static lookup tables shared by the engine
class EngineDefaults:
    """Default time buckets, frequency mapping and grace periods"""

    BUCKET_ORDER: list[str] = ["morning", "lunch", "evening", "before_bed"]

    TIME_BUCKETS: dict = {
        "morning": {"label": "Morning", "default_time": "08:00", "earliest": "06:00", "latest": "10:00"},
        "lunch": {"label": "Lunch", "default_time": "12:00", "earliest": "11:00", "latest": "14:00"},
        "evening": {"label": "Evening", "default_time": "18:00", "earliest": "17:00", "latest": "20:00"},
        "before_bed": {"label": "Before Bed", "default_time": "22:00", "earliest": "21:00", "latest": "23:30"},
    }

    FREQUENCY_MAPPING: dict = {
        "daily": {
            "preferred_bucket": "morning",
            "fallback_buckets": ["evening", "lunch", "before_bed"],
        },
        "twice_daily": {
            "buckets": ["morning", "evening"],
            "spacing": {"minimum_hours": 8, "preferred_hours": 12},
        },
        "three_times_daily": {
            "buckets": ["morning", "lunch", "evening"],
            "spacing": {"minimum_hours": 4, "preferred_hours": 8},
        },
        "four_times_daily": {
            "buckets": ["morning", "lunch", "evening", "before_bed"],
            "spacing": {"minimum_hours": 4, "preferred_hours": 6},
        },
    }

    WAKE_TIME: str = "07:00"
    BED_TIME: str = "23:00"

    # Grace minutes by medication risk class
    GRACE_MINUTES: dict = {
        "critical": 15,
        "standard": 30,
        "vitamin": 120,
        "prn": 0,
    }

    # Adherence percentage thresholds, checked top-down
    RISK_THRESHOLDS: list[tuple] = [
        (90.0, "low"),
        (70.0, "medium"),
        (50.0, "high"),
    ]

    # Notification preference defaults
    NOTIFICATION_CHANNELS: list[str] = ["email", "push"]
    QUIET_HOURS_START: str = "22:00"
    QUIET_HOURS_END: str = "07:00"


# Database table names
class TableNames:
    MEDICATION_COMMANDS = "medication_commands"
    MEDICATION_EVENTS = "medication_events"
    PATIENT_TIME_PREFERENCES = "patient_time_preferences"
    DAILY_SUMMARIES = "medication_daily_summaries"
    FAMILY_ACCESS = "family_access"
    NOTIFICATION_CONTACTS = "notification_contacts"
    NOTIFICATION_PREFERENCES = "notification_preferences"
    NOTIFICATIONS = "notifications"
    ADHERENCE_ANALYTICS = "adherence_analytics"
    JOB_RUNS = "job_runs"


settings = get_settings()
engine_defaults = EngineDefaults()
