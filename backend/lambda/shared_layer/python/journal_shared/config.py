"""journal_shared.config — Process-wide configuration for journal Lambdas.

The configuration is read from the environment once, at cold start, and then
handed to every component that needs it. Query and persistence code never
reads ``os.environ`` directly.

Environment variables:
    BLOGS_TABLE              default: blogs
    BLOGS_OWNER_INDEX        default: userIdIndex
    MEDIA_BUCKET             default: ""
    EXPORT_BUCKET            default: MEDIA_BUCKET
    DYNAMODB_REGION          default: AWS_REGION, then us-east-1
    DEFAULT_PAGE_SIZE        default: 10
    MAX_PAGE_SIZE            default: 100
    PRESIGN_EXPIRY_SECONDS   default: 3600
    CORS_ORIGIN              default: *
    AWS_CLIENT_MAX_ATTEMPTS  default: 3
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
PRESIGN_EXPIRY_SECONDS = 3600


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = str(env.get(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


@dataclass(frozen=True)
class JournalConfig:
    blogs_table: str = "blogs"
    owner_index: str = "userIdIndex"
    media_bucket: str = ""
    export_bucket: str = ""
    region: str = "us-east-1"
    default_page_size: int = DEFAULT_PAGE_SIZE
    max_page_size: int = MAX_PAGE_SIZE
    presign_expiry_seconds: int = PRESIGN_EXPIRY_SECONDS
    cors_origin: str = "*"
    client_max_attempts: int = 3

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "JournalConfig":
        if env is None:
            env = os.environ
        media_bucket = env.get("MEDIA_BUCKET", "")
        max_page_size = max(1, _env_int(env, "MAX_PAGE_SIZE", MAX_PAGE_SIZE))
        default_page_size = _env_int(env, "DEFAULT_PAGE_SIZE", DEFAULT_PAGE_SIZE)
        default_page_size = min(max(1, default_page_size), max_page_size)
        return cls(
            blogs_table=env.get("BLOGS_TABLE", "blogs"),
            owner_index=env.get("BLOGS_OWNER_INDEX", "userIdIndex"),
            media_bucket=media_bucket,
            export_bucket=env.get("EXPORT_BUCKET") or media_bucket,
            region=env.get("DYNAMODB_REGION") or env.get("AWS_REGION") or "us-east-1",
            default_page_size=default_page_size,
            max_page_size=max_page_size,
            presign_expiry_seconds=max(
                1, _env_int(env, "PRESIGN_EXPIRY_SECONDS", PRESIGN_EXPIRY_SECONDS)
            ),
            cors_origin=env.get("CORS_ORIGIN", "*"),
            client_max_attempts=max(1, _env_int(env, "AWS_CLIENT_MAX_ATTEMPTS", 3)),
        )


_config: Optional[JournalConfig] = None


def get_config() -> JournalConfig:
    """Return the process configuration, loading it from the environment once."""
    global _config
    if _config is None:
        _config = JournalConfig.from_env()
    return _config


def set_config(config: Optional[JournalConfig]) -> None:
    """Replace (or with ``None`` reset) the process configuration."""
    global _config
    _config = config
