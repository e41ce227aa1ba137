"""journal_shared.aws_clients — Lazy-singleton AWS service clients.

Clients are created on first call and cached for the lifetime of the
execution environment, so cold starts only pay for the clients a handler
actually uses.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from journal_shared.config import JournalConfig, get_config

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_s3 = None


def _client_config(config: JournalConfig) -> Config:
    return Config(retries={"max_attempts": config.client_max_attempts, "mode": "standard"})


def _get_ddb(config: Optional[JournalConfig] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        config = config or get_config()
        _ddb = boto3.client(
            "dynamodb",
            region_name=config.region,
            config=_client_config(config),
        )
    return _ddb


def _get_s3(config: Optional[JournalConfig] = None):
    """Get (or create) the S3 client singleton."""
    global _s3
    if _s3 is None:
        config = config or get_config()
        _s3 = boto3.client(
            "s3",
            region_name=config.region,
            config=_client_config(config),
        )
    return _s3
