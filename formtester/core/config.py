from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
from pathlib import Path

class Settings(BaseSettings):
    APP_NAME: str = "FormTester"
    VERSION: str = "1.0.0"
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DATABASE_URL: str = "sqlite:///./formtester.db"
    DEBUG: bool = False

    # CORS
    ALLOWED_ORIGINS: str = "http://localhost:3001"

    # Timer rules (one per active schedule)
    TIMER_BACKEND: str = "apscheduler"  # apscheduler, eventbridge
    TIMEZONE: str = "UTC"
    RULE_NAME_PREFIX: str = "form-test-schedule"
    RUN_SCHEDULED_TEST_TARGET_ARN: Optional[str] = None
    AWS_REGION: str = "us-east-1"
    AWS_ENDPOINT_URL: Optional[str] = None

    # Screenshot storage
    SCREENSHOT_BACKEND: str = "local"  # local, s3
    SCREENSHOTS_DIR: Path = Path("./screenshots")
    SCREENSHOTS_BUCKET: Optional[str] = None
    SCREENSHOT_URL_EXPIRES: int = 3600

    # Browser runs
    BROWSER_HEADLESS: bool = True
    VIEWPORT_WIDTH: int = 1280
    VIEWPORT_HEIGHT: int = 800
    NAVIGATION_TIMEOUT_MS: int = 30000
    SUCCESS_INDICATOR_TIMEOUT_MS: int = 10000
    NETWORK_IDLE_TIMEOUT_MS: int = 10000
    RUN_DEADLINE_SECONDS: float = 300

    # Schedule bookkeeping
    NEXT_RUN_MODE: str = "estimate"  # estimate, cron
    COMPLETED_RUN_OUTCOME: str = "failed"  # failed, success
    SWEEP_INTERVAL_MINUTES: int = 0
    STATS_WRITE_RETRIES: int = 5

    class Config:
        env_file = ".env"
        env_prefix = "FORMTESTER_"

@lru_cache()
def get_settings():
    return Settings()
