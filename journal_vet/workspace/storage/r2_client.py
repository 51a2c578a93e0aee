"""Cloudflare R2 audio bucket client (S3-compatible).

R2 speaks the S3 API, so boto3 is used directly. The workspace core only needs
two things from the bucket:
- presigned PUT URLs so clients upload audio out of band
- object deletion when a journal is removed
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import unquote, urlsplit

import boto3
import structlog
from botocore.client import Config
from botocore.exceptions import ClientError

__all__ = ["R2Config", "R2Client", "normalize_audio_key", "AUDIO_PREFIX"]

logger = structlog.get_logger(__name__)

AUDIO_PREFIX = "audio/"

# Public and signed object URLs embed the bucket path after one of these markers.
_OBJECT_URL_MARKER = re.compile(r"^.*?/(?:storage/v1/)?object/(?:sign|public)/")


def normalize_audio_key(audio_path: Optional[str]) -> Optional[str]:
    """Reduce a stored ``audio_path`` to the bucket object key.

    Accepts plain keys (``<workspace>/<file>``), keys with the ``audio/``
    prefix, and full storage URLs with or without a query string. Returns
    ``None`` when nothing usable is left.
    """

    if not audio_path:
        return None
    key = audio_path.strip()
    if "://" in key:
        key = urlsplit(key).path
    else:
        key = key.split("?", 1)[0].split("#", 1)[0]
    key = _OBJECT_URL_MARKER.sub("", key)
    key = unquote(key).lstrip("/")
    if key.startswith(AUDIO_PREFIX):
        key = key[len(AUDIO_PREFIX):]
    key = key.lstrip("/")
    return key or None


@dataclass(slots=True)
class R2Config:
    """Cloudflare R2 settings."""

    # https://<account_id>.r2.cloudflarestorage.com
    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    # Seconds a presigned URL stays valid
    presigned_url_expiry: int = 3600

    @classmethod
    def from_env(cls) -> R2Config:
        """Load the R2 settings from environment variables."""
        endpoint_url = os.getenv("R2_ENDPOINT_URL")
        access_key_id = os.getenv("R2_ACCESS_KEY_ID")
        secret_access_key = os.getenv("R2_SECRET_ACCESS_KEY")
        bucket_name = os.getenv("R2_BUCKET_NAME", "audio")

        if not all([endpoint_url, access_key_id, secret_access_key]):
            raise ValueError(
                "R2 configuration required: set R2_ENDPOINT_URL, R2_ACCESS_KEY_ID, "
                "R2_SECRET_ACCESS_KEY"
            )

        return cls(
            endpoint_url=endpoint_url,  # type: ignore[arg-type]
            access_key_id=access_key_id,  # type: ignore[arg-type]
            secret_access_key=secret_access_key,  # type: ignore[arg-type]
            bucket_name=bucket_name,
            presigned_url_expiry=int(os.getenv("R2_PRESIGNED_URL_EXPIRY", "3600")),
        )


class R2Client:
    """Audio bucket client (boto3 S3 API)."""

    def __init__(self, config: R2Config, client: Any = None):
        self.config = config
        self._client = client or boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
            ),
            region_name="auto",  # R2 has no regions but boto3 requires one
        )

    def delete_object(self, key: str) -> None:
        """Delete one object. Deleting a missing key is not an error in S3.

        Raises:
            ClientError: R2 rejected the request
        """
        try:
            self._client.delete_object(Bucket=self.config.bucket_name, Key=key)
        except ClientError as e:
            logger.error("storage.delete_failed", key=key, error=str(e))
            raise
        logger.info("storage.deleted", key=key, bucket=self.config.bucket_name)

    def generate_presigned_upload_url(
        self,
        key: str,
        content_type: Optional[str] = None,
        expiry: Optional[int] = None,
    ) -> str:
        """Presigned PUT URL for a direct client upload.

        Args:
            key: object key, ``<workspace_id>/<file name>``
            content_type: MIME type the upload must declare
            expiry: validity in seconds (defaults to the configured value)
        """
        expiry = expiry or self.config.presigned_url_expiry
        params: dict[str, Any] = {"Bucket": self.config.bucket_name, "Key": key}
        if content_type:
            params["ContentType"] = content_type

        try:
            url = self._client.generate_presigned_url(
                "put_object",
                Params=params,
                ExpiresIn=expiry,
            )
        except ClientError as e:
            logger.error("storage.presign_failed", key=key, error=str(e))
            raise

        logger.info("storage.presigned_upload", key=key, expiry=expiry)
        return url
