from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..core.config import settings
from ..realtime.errors import DependencyError

logger = logging.getLogger(__name__)


class R2Config:
    def __init__(self) -> None:
        self.account_id = settings.R2_ACCOUNT_ID
        self.access_key_id = settings.R2_ACCESS_KEY_ID
        self.secret_access_key = settings.R2_SECRET_ACCESS_KEY
        self.bucket = settings.R2_BUCKET
        self.endpoint_url = settings.R2_S3_ENDPOINT or (
            f"https://{self.account_id}.r2.cloudflarestorage.com" if self.account_id else None
        )
        # Public custom domain used to reference objects; falls back to the
        # path-style endpoint + bucket.
        public = (settings.R2_PUBLIC_BASE_URL or "").rstrip("/")
        if not public and self.endpoint_url and self.bucket:
            public = f"{self.endpoint_url.rstrip('/')}/{self.bucket}"
        self.public_base_url = public

    def is_configured(self) -> bool:
        return bool(self.bucket and self.endpoint_url and self.access_key_id and self.secret_access_key)


def _client(cfg: R2Config):
    """Create an S3 client configured for Cloudflare R2 (s3v4, path-style)."""
    return boto3.client(
        "s3",
        aws_access_key_id=cfg.access_key_id,
        aws_secret_access_key=cfg.secret_access_key,
        endpoint_url=cfg.endpoint_url,
        region_name="auto",
        config=Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
        ),
    )


def guess_extension(filename: Optional[str], content_type: Optional[str]) -> str:
    if filename and "." in filename:
        ext = filename.rsplit(".", 1)[-1].strip().lower()
        if ext:
            return "." + ext
    mapping = {
        "image/jpeg": ".jpg",
        "image/png": ".png",
        "image/gif": ".gif",
        "image/webp": ".webp",
        "video/mp4": ".mp4",
        "video/webm": ".webm",
        "application/pdf": ".pdf",
    }
    return mapping.get((content_type or "").lower(), "")


def build_key(folder: str, filename: Optional[str], content_type: Optional[str]) -> str:
    now = dt.datetime.utcnow()
    folder = (folder or "attachments").strip("/")
    return f"{folder}/{now:%Y}/{now:%m}/{uuid.uuid4().hex}{guess_extension(filename, content_type)}"


class R2AttachmentStore:
    """Attachment store backed by an S3-compatible bucket.

    ``store(data, folder) -> {"id", "url"}`` and ``remove(id)``; both are
    blocking and are called from the threadpool.
    """

    def __init__(self, cfg: Optional[R2Config] = None) -> None:
        self.cfg = cfg or R2Config()
        self._s3 = None

    def _get_client(self):
        if not self.cfg.is_configured():
            raise DependencyError("Attachment storage is not configured")
        if self._s3 is None:
            self._s3 = _client(self.cfg)
        return self._s3

    def store(
        self,
        data: bytes,
        folder: str,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> dict:
        client = self._get_client()
        key = build_key(folder, filename, content_type)
        params = {"Bucket": self.cfg.bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        try:
            client.put_object(**params)
        except (BotoCoreError, ClientError) as exc:
            logger.exception("Attachment upload failed", extra={"key": key})
            raise DependencyError("Attachment storage unavailable") from exc
        return {"id": key, "url": f"{self.cfg.public_base_url}/{key}"}

    def remove(self, key: str) -> None:
        client = self._get_client()
        try:
            client.delete_object(Bucket=self.cfg.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.exception("Attachment delete failed", extra={"key": key})
            raise DependencyError("Attachment storage unavailable") from exc


_store = None


def get_attachment_store():
    global _store
    if _store is None:
        _store = R2AttachmentStore()
    return _store


def set_attachment_store(store) -> None:
    global _store
    _store = store
