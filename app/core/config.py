"""
Application configuration using Pydantic Settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import Dict, Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    APP_NAME: str = "Media Jobs API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = True
    ENV: str = "local"

    # MongoDB
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "mediajobs"

    # AWS
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "us-east-1"
    AWS_S3_BUCKET: str = ""
    MAX_INPUT_OBJECT_BYTES: int = 50 * 1024 * 1024  # 50MB, same as upload limit
    MAX_REQUEST_BODY_BYTES: int = 256 * 1024

    # Celery (SQS broker)
    CELERY_BROKER_URL: str = "sqs://"
    CELERY_QUEUE_PREFIX: str = "mediajobs-"
    CELERY_VISIBILITY_TIMEOUT: int = 600
    CELERY_POLLING_INTERVAL: float = 1.0
    CELERY_WAIT_TIME_SECONDS: int = 10
    CELERY_TASK_TIME_LIMIT: int = 540  # 9 minutes for video processing
    CELERY_TASK_SOFT_TIME_LIMIT: int = 500
    CELERY_TASK_ALWAYS_EAGER: bool = False
    SQS_ANALYSIS_QUEUE_URL: str = ""
    SQS_FIX_QUEUE_URL: str = ""

    # Worker pipeline
    JOB_LEASE_SECONDS: int = 600
    JOB_MAX_CLAIMS: int = 3
    UPSTREAM_MAX_ATTEMPTS: int = 3
    UPSTREAM_RETRY_BACKOFF_SECONDS: float = 2.0
    DEDUP_MAX_RETRIES: int = 5

    # Credits
    BILLING_POLICY: Literal["request", "compute"] = "request"
    CREDIT_PERIOD_DAYS: int = 30
    LEDGER_CAS_MAX_RETRIES: int = 10
    LEDGER_RECENT_DEBITS: int = 200
    CREDIT_COSTS: Dict[str, int] = {
        "image_analysis": 1,
        "image_fix": 1,
        "video_analysis": 2,
        "video_fix": 2,
    }
    PLAN_CREDIT_LIMITS: Dict[str, int] = {
        "free": 5,
        "starter": 20,
        "pro": 50,
        "pro_max": 500,
    }

    # RevenueCat
    REVENUECAT_WEBHOOK_SECRET: str = ""

    # OpenAI (analysis)
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o"
    AI_REQUEST_TIMEOUT_SECONDS: float = 120.0

    # Media transform service (fixes)
    TRANSFORM_SERVICE_URL: str = "http://localhost:8090"
    TRANSFORM_TIMEOUT_SECONDS: float = 300.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"



@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
