"""journal_shared.media — Entry attachments in S3.

Images arrive as base64 strings, optionally as data URLs
(``data:image/png;base64,...``), and are stored privately under
``blogs/{blogId}/{uuid}.{ext}``. Entries keep only the object keys; reads
resolve them to presigned GET URLs.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import uuid
from typing import Any, Dict, Iterable, List

from botocore.exceptions import BotoCoreError, ClientError

from journal_shared.config import JournalConfig
from journal_shared.errors import EntryValidationError, MediaStorageNotConfiguredError

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:image/(?P<subtype>[\w.+-]+);base64,", re.IGNORECASE)
_IMAGE_TYPES = {
    "jpeg": ("image/jpeg", "jpg"),
    "jpg": ("image/jpeg", "jpg"),
    "png": ("image/png", "png"),
    "gif": ("image/gif", "gif"),
    "webp": ("image/webp", "webp"),
}
MAX_IMAGES_PER_REQUEST = 10


def _decode_image(data: Any) -> tuple:
    """Return (bytes, content_type, extension) for a base64 image payload."""
    if not isinstance(data, str) or not data.strip():
        raise EntryValidationError("Images must be non-empty base64 strings.")
    content_type, ext = _IMAGE_TYPES["jpeg"]
    match = _DATA_URL_RE.match(data)
    if match:
        subtype = match.group("subtype").lower()
        if subtype not in _IMAGE_TYPES:
            raise EntryValidationError(f"Unsupported image type: image/{subtype}")
        content_type, ext = _IMAGE_TYPES[subtype]
        data = data[match.end():]
    try:
        body = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EntryValidationError("Image payload is not valid base64.") from exc
    if not body:
        raise EntryValidationError("Image payload is empty.")
    return body, content_type, ext


class MediaStore:
    def __init__(self, config: JournalConfig, s3):
        self.config = config
        self.s3 = s3

    def _require_bucket(self, bucket: str) -> str:
        if not bucket:
            raise MediaStorageNotConfiguredError("MEDIA_BUCKET is not configured")
        return bucket

    def upload_image(self, blog_id: str, data: Any) -> str:
        body, content_type, ext = _decode_image(data)
        key = f"blogs/{blog_id}/{uuid.uuid4()}.{ext}"
        self.s3.put_object(
            Bucket=self._require_bucket(self.config.media_bucket),
            Key=key,
            Body=body,
            ContentType=content_type,
        )
        return key

    def upload_images(self, blog_id: str, value: Any) -> List[str]:
        """Upload one or many images; on failure, remove what was already stored."""
        if value in (None, "", []):
            return []
        images = value if isinstance(value, list) else [value]
        if len(images) > MAX_IMAGES_PER_REQUEST:
            raise EntryValidationError(f"At most {MAX_IMAGES_PER_REQUEST} images per request.")
        # Validate everything before the first write.
        for image in images:
            _decode_image(image)

        keys: List[str] = []
        try:
            for image in images:
                keys.append(self.upload_image(blog_id, image))
        except (BotoCoreError, ClientError):
            logger.error("image upload failed for blog %s after %d of %d", blog_id, len(keys), len(images))
            self.delete_objects(keys)
            raise
        return keys

    def delete_objects(self, keys: Iterable[str]) -> None:
        keys = [k for k in keys if k]
        if not keys:
            return
        bucket = self._require_bucket(self.config.media_bucket)
        # delete_objects accepts at most 1000 keys per call.
        for start in range(0, len(keys), 1000):
            batch = keys[start:start + 1000]
            resp = self.s3.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )
            for err in resp.get("Errors") or []:
                logger.warning("failed to delete s3://%s/%s: %s", bucket, err.get("Key"), err.get("Message"))

    def presign_bucket(self, bucket: str, key: str) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=self.config.presign_expiry_seconds,
        )

    def presign(self, key: str) -> str:
        return self.presign_bucket(self._require_bucket(self.config.media_bucket), key)

    def resolve(self, keys: Iterable[str]) -> List[Dict[str, str]]:
        return [{"key": key, "url": self.presign(key)} for key in keys if key]
