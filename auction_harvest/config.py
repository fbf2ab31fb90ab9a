"""Configuration management from environment variables."""
import os
from datetime import date
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from auction_harvest.errors import ConfigurationError

# Load .env file
load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent


def _getbool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _getdelays(name: str, default: str) -> tuple[float, ...]:
    """Parse a comma separated list of seconds, e.g. '1,2,4'."""
    raw = os.getenv(name, default)
    return tuple(float(part) for part in raw.split(",") if part.strip())


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse YYYY-MM-DD, returning None for empty values."""
    if not value:
        return None
    return date.fromisoformat(value.strip())


class Config:
    """Application configuration."""

    # Upstream API
    API_BASE_URL: str = os.getenv("API_BASE_URL", "https://www.westauction.com/api").rstrip("/")
    TIMEOUT: float = float(os.getenv("TIMEOUT", "30"))

    # Windowed traversal
    START_DATE: str = os.getenv("START_DATE", "2024-10-07")
    END_DATE: Optional[str] = os.getenv("END_DATE")
    CHUNK_DAYS: int = int(os.getenv("CHUNK_DAYS", "7"))
    PAST_SALES: bool = _getbool("PAST_SALES", "true")
    WINDOW_PAGE_CONTINUATION: bool = _getbool("WINDOW_PAGE_CONTINUATION", "false")
    FULL_PAGE_THRESHOLD: int = int(os.getenv("FULL_PAGE_THRESHOLD", "10"))
    WINDOW_MAX_PAGES: int = int(os.getenv("WINDOW_MAX_PAGES", "10"))
    LOTS_MAX_PAGES: int = int(os.getenv("LOTS_MAX_PAGES", "50"))

    # Rate limiting & retry
    REQUEST_DELAY: float = float(os.getenv("REQUEST_DELAY", "0.3"))
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    RETRY_BACKOFF: tuple[float, ...] = _getdelays("RETRY_BACKOFF", "1,2,4")
    RETRY_AFTER_DEFAULT: float = float(os.getenv("RETRY_AFTER_DEFAULT", "60"))
    MAX_RATE_LIMIT_WAITS: int = int(os.getenv("MAX_RATE_LIMIT_WAITS", "5"))

    # Storage and progress
    DATA_DIR: Path = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
    RECORD_LOT_IMAGE_URLS: bool = _getbool("RECORD_LOT_IMAGE_URLS", "true")
    CHECKPOINT_EVERY: int = int(os.getenv("CHECKPOINT_EVERY", "10"))
    LOG_EVERY: int = int(os.getenv("LOG_EVERY", "100"))
    MAX_FAILURES: int = int(os.getenv("MAX_FAILURES", "1000"))

    # Object store
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")
    S3_BUCKET_NAME: Optional[str] = os.getenv("S3_BUCKET_NAME")
    S3_KEY_PREFIX: str = os.getenv("S3_KEY_PREFIX", "lotimages/")
    S3_ENABLE_VERSIONING: bool = _getbool("S3_ENABLE_VERSIONING", "false")
    AWS_ACCESS_KEY_ID: Optional[str] = os.getenv("AWS_ACCESS_KEY_ID")
    AWS_SECRET_ACCESS_KEY: Optional[str] = os.getenv("AWS_SECRET_ACCESS_KEY")

    # Transfer engine
    CONCURRENT_UPLOADS: int = int(os.getenv("CONCURRENT_UPLOADS", "10"))
    CHECKPOINT_EVERY_N_IMAGES: int = int(os.getenv("CHECKPOINT_EVERY_N_IMAGES", "100"))
    LOG_EVERY_N_IMAGES: int = int(os.getenv("LOG_EVERY_N_IMAGES", "500"))
    DOWNLOAD_TIMEOUT: float = float(os.getenv("DOWNLOAD_TIMEOUT", "30"))
    MAX_UPLOAD_RETRIES: int = int(os.getenv("MAX_UPLOAD_RETRIES", "3"))
    UPLOAD_RETRY_BACKOFF: tuple[float, ...] = _getdelays("UPLOAD_RETRY_BACKOFF", "1,2,4")
    UPLOAD_PART_SIZE: int = int(os.getenv("UPLOAD_PART_SIZE", str(5 * 1024 * 1024)))
    DRAIN_TIMEOUT: float = float(os.getenv("DRAIN_TIMEOUT", "5"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def start_date(cls) -> date:
        return parse_date(cls.START_DATE)

    @classmethod
    def end_date(cls) -> date:
        return parse_date(cls.END_DATE) or date.today()

    @classmethod
    def validate(cls, require_bucket: bool = False) -> None:
        """Validate required configuration."""
        errors = []
        try:
            start = cls.start_date()
            end = cls.end_date()
            if start is None:
                errors.append("START_DATE is required")
            elif start > end:
                errors.append(f"START_DATE {start} is after END_DATE {end}")
        except ValueError as e:
            errors.append(f"Invalid date: {e}")
        if cls.CHUNK_DAYS <= 0:
            errors.append("CHUNK_DAYS must be positive")
        if cls.CONCURRENT_UPLOADS <= 0:
            errors.append("CONCURRENT_UPLOADS must be positive")
        if not cls.RETRY_BACKOFF or not cls.UPLOAD_RETRY_BACKOFF:
            errors.append("RETRY_BACKOFF and UPLOAD_RETRY_BACKOFF need at least one delay")
        if not cls.API_BASE_URL:
            errors.append("API_BASE_URL is required")
        if require_bucket and not cls.S3_BUCKET_NAME:
            errors.append("S3_BUCKET_NAME is required")
        if errors:
            raise ConfigurationError(f"Configuration errors: {', '.join(errors)}")

    @classmethod
    def checkpoint_dir(cls) -> Path:
        return cls.DATA_DIR / "checkpoints"


config = Config()
