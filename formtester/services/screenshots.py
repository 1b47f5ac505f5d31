from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional
import logging
import time

from formtester.core.config import get_settings
from formtester.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


def screenshot_key(test_id: str, stage: str) -> str:
    """One prefix per test id; stages are timestamped so re-captures never collide."""
    return f"{test_id}/{stage}-{int(time.time() * 1000)}.png"


class ScreenshotStore(ABC):
    """Blob store for PNG screenshots captured during a test run."""

    @abstractmethod
    def save(self, test_id: str, stage: str, data: bytes) -> str:
        """Stores one screenshot and returns its key."""

    @abstractmethod
    def signed_url(self, key: str, expires: int = 3600) -> Optional[str]:
        """Time-limited URL for a stored key, or None if it cannot be produced."""


class LocalScreenshotStore(ScreenshotStore):
    """Writes screenshots below a directory that ``main`` serves at ``/screenshots``."""

    def __init__(self, base_dir: Path, url_prefix: str = "/screenshots"):
        self.base_dir = Path(base_dir)
        self.url_prefix = url_prefix.rstrip("/")

    def save(self, test_id: str, stage: str, data: bytes) -> str:
        key = screenshot_key(test_id, stage)
        path = self.base_dir / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise ExternalServiceError(f"Could not write screenshot {key}: {e}")
        return key

    def signed_url(self, key: str, expires: int = 3600) -> Optional[str]:
        # Keys are generated internally; anything escaping the base dir is foreign
        if ".." in Path(key).parts or not (self.base_dir / key).is_file():
            return None
        return f"{self.url_prefix}/{key}"


class S3ScreenshotStore(ScreenshotStore):
    def __init__(self, bucket: str, client: Any = None, region: str = "us-east-1", endpoint_url: Optional[str] = None):
        if not bucket:
            raise ExternalServiceError("SCREENSHOTS_BUCKET is not configured")
        self.bucket = bucket
        if client is None:
            import boto3
            client_kwargs = {"service_name": "s3", "region_name": region}
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client(**client_kwargs)
        self.client = client

    def save(self, test_id: str, stage: str, data: bytes) -> str:
        from botocore.exceptions import BotoCoreError, ClientError
        key = f"screenshots/{screenshot_key(test_id, stage)}"
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType="image/png")
        except (BotoCoreError, ClientError) as e:
            raise ExternalServiceError(f"Could not upload screenshot {key}: {e}")
        return key

    def signed_url(self, key: str, expires: int = 3600) -> Optional[str]:
        from botocore.exceptions import BotoCoreError, ClientError
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Error generating signed URL for {key}: {e}")
            return None


def get_screenshot_store(settings=None) -> ScreenshotStore:
    settings = settings or get_settings()
    if settings.SCREENSHOT_BACKEND == "s3":
        return S3ScreenshotStore(
            settings.SCREENSHOTS_BUCKET,
            region=settings.AWS_REGION,
            endpoint_url=settings.AWS_ENDPOINT_URL,
        )
    return LocalScreenshotStore(settings.SCREENSHOTS_DIR)
