import abc
import logging
import os
import uuid
from pathlib import Path

from app.core.config import settings

logger = logging.getLogger(__name__)


class StorageProvider(abc.ABC):
    """Where AI job result workbooks are kept between completion and download."""

    @abc.abstractmethod
    def save_bytes(self, content: bytes, filename: str) -> str:
        """Store `content` under a fresh unique name; returns the file_ref kept in the job payload."""

    @abc.abstractmethod
    def read_bytes(self, file_ref: str) -> bytes:
        """Raises FileNotFoundError if the result is gone (purged or deleted)."""

    @abc.abstractmethod
    def delete(self, file_ref: str) -> bool:
        """Returns False when nothing was deleted."""


class LocalStorageProvider(StorageProvider):
    """Result files under a local directory (STORAGE_DIR). Single-server deployments."""
    def __init__(self, base_dir: str = "job_results"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def save_bytes(self, content: bytes, filename: str) -> str:
        target_path = self.base_dir / f"{uuid.uuid4()}{Path(filename).suffix}"
        target_path.write_bytes(content)
        return str(target_path)

    def read_bytes(self, file_ref: str) -> bytes:
        return Path(os.path.abspath(file_ref)).read_bytes()

    def delete(self, file_ref: str) -> bool:
        try:
            os.remove(file_ref)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to delete {file_ref}: {e}")
            return False


class S3StorageProvider(StorageProvider):
    """Result files in an S3 bucket under the ai-results/ prefix."""
    def __init__(self):
        import boto3
        self.s3 = boto3.client(
            "s3",
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            region_name=settings.AWS_REGION
        )
        self.bucket = settings.AWS_BUCKET_NAME

    def save_bytes(self, content: bytes, filename: str) -> str:
        ext = os.path.splitext(filename)[1]
        unique_key = f"ai-results/{uuid.uuid4()}{ext}"
        try:
            self.s3.put_object(Bucket=self.bucket, Key=unique_key, Body=content)
            return unique_key
        except Exception as e:
            raise RuntimeError(f"S3 upload of {filename} failed: {e}")

    def read_bytes(self, file_ref: str) -> bytes:
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=file_ref)
        except self.s3.exceptions.NoSuchKey:
            raise FileNotFoundError(file_ref)
        return response["Body"].read()

    def delete(self, file_ref: str) -> bool:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=file_ref)
            return True
        except Exception as e:
            logger.warning(f"S3 delete failed for {file_ref}: {e}")
            return False

# ─── Factory ─────────────────────────────────────────────────────────────────

def get_storage_provider() -> StorageProvider:
    if settings.STORAGE_TYPE.lower() == "s3":
        return S3StorageProvider()
    return LocalStorageProvider(settings.STORAGE_DIR)
