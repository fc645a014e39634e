import asyncio
import logging
import os
import re
from typing import Optional
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError

from ...config import Settings, get_settings

logger = logging.getLogger(__name__)

_SAFE_PREFIX = re.compile(r"^[A-Za-z0-9_\-/]+$")


class StorageService:
    """Stores uploaded files in S3, or under app/uploads when no bucket is set."""

    def __init__(self, settings: Optional[Settings] = None, uploads_root: Optional[str] = None):
        settings = settings or get_settings()
        self.bucket = settings.s3_bucket
        self.region = settings.s3_region
        self.cloudfront_domain = settings.cloudfront_domain
        self.app_root = os.path.dirname(os.path.dirname(os.path.dirname(__file__)))
        self.uploads_root = uploads_root or os.path.join(self.app_root, "uploads")

        if self.bucket:
            self.s3_client = boto3.client(
                "s3",
                region_name=self.region,
                aws_access_key_id=settings.aws_access_key_id,
                aws_secret_access_key=settings.aws_secret_access_key,
            )
        else:
            self.s3_client = None

    def _generate_key(self, filename: str, prefix: str) -> str:
        if not _SAFE_PREFIX.match(prefix) or ".." in prefix:
            raise ValueError("Invalid storage prefix")
        ext = os.path.splitext(filename)[1].lower()
        return f"{prefix.strip('/')}/{uuid4().hex}{ext}"

    def _public_path(self, key: str) -> str:
        if self.cloudfront_domain:
            return f"https://{self.cloudfront_domain}/{key}"
        return f"s3://{self.bucket}/{key}"

    def _s3_key(self, path: str) -> Optional[str]:
        if self.cloudfront_domain and path.startswith(f"https://{self.cloudfront_domain}/"):
            return path[len(f"https://{self.cloudfront_domain}/"):]
        if self.bucket and path.startswith(f"s3://{self.bucket}/"):
            return path[len(f"s3://{self.bucket}/"):]
        return None

    def _local_path(self, path: str) -> str:
        """Map an /uploads/... reference onto disk, refusing anything outside uploads_root."""
        if not path.startswith("/uploads/"):
            raise RuntimeError("Unsupported local storage path")
        resolved = os.path.realpath(os.path.join(self.uploads_root, path[len("/uploads/"):]))
        root = os.path.realpath(self.uploads_root)
        if not resolved.startswith(f"{root}{os.sep}"):
            raise RuntimeError("Local storage path is outside uploads directory")
        return resolved

    async def upload_file(
        self,
        file_bytes: bytes,
        filename: str,
        prefix: str,
        content_type: Optional[str] = None,
    ) -> str:
        """Upload a file and return its storage reference (CloudFront URL, s3:// URI or /uploads path)."""
        key = self._generate_key(filename, prefix)

        if self.s3_client:
            extra_args = {"ContentType": content_type} if content_type else {}
            try:
                await asyncio.to_thread(
                    self.s3_client.put_object,
                    Bucket=self.bucket,
                    Key=key,
                    Body=file_bytes,
                    ServerSideEncryption="AES256",
                    **extra_args,
                )
            except ClientError as e:
                raise RuntimeError(f"Failed to upload to S3: {e}") from e
            return self._public_path(key)

        local_path = self._local_path(f"/uploads/{key}")
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        with open(local_path, "wb") as f:
            f.write(file_bytes)
        logger.debug("[Storage] Wrote %d bytes to %s", len(file_bytes), local_path)
        return f"/uploads/{key}"

    async def delete_file(self, path: str) -> bool:
        key = self._s3_key(path)
        if key is not None:
            if not self.s3_client:
                return False
            try:
                await asyncio.to_thread(self.s3_client.delete_object, Bucket=self.bucket, Key=key)
                return True
            except ClientError:
                logger.warning("[Storage] Failed to delete %s", path)
                return False

        try:
            local_path = self._local_path(path)
        except RuntimeError:
            return False
        if os.path.exists(local_path):
            os.unlink(local_path)
            return True
        return False

    def get_presigned_url(self, path: str, expires_in: int = 900) -> Optional[str]:
        """Short-lived download link for reviewers. None for local files."""
        key = self._s3_key(path)
        if key is None or not self.s3_client:
            return None
        try:
            return self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except ClientError:
            return None


_storage: Optional[StorageService] = None


def get_storage() -> StorageService:
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage
