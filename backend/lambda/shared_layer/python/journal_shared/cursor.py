"""journal_shared.cursor — Continuation tokens for paged entry retrieval.

A token is the URL-safe base64 (unpadded) of a fixed-schema JSON record:

    {"v": 1, "s": "owner", "id": "<blogId>", "o": "<userId>", "c": "<createdAt>"}

``s`` names the retrieval strategy that produced it: ``owner`` for the
owner-index query (key is blogId + userId + createdAt) and ``scan`` for the
table scan (key is blogId). Anything that does not decode to exactly this
shape is rejected with InvalidCursorError.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from journal_shared.errors import InvalidCursorError

CURSOR_VERSION = 1
MAX_TOKEN_LENGTH = 1024

STRATEGY_OWNER = "owner"
STRATEGY_SCAN = "scan"
_STRATEGIES = {STRATEGY_OWNER, STRATEGY_SCAN}


@dataclass(frozen=True)
class PageCursor:
    strategy: str
    blog_id: str
    owner_id: str = ""
    created_at: str = ""

    def to_exclusive_start_key(self) -> Dict[str, Any]:
        key: Dict[str, Any] = {"blogId": {"S": self.blog_id}}
        if self.strategy == STRATEGY_OWNER:
            key["userId"] = {"S": self.owner_id}
            key["createdAt"] = {"S": self.created_at}
        return key


def _key_string(key: Dict[str, Any], name: str) -> str:
    attr = key.get(name)
    if isinstance(attr, dict) and isinstance(attr.get("S"), str):
        return attr["S"]
    return ""


def cursor_from_key(strategy: str, last_evaluated_key: Optional[Dict[str, Any]]) -> Optional[PageCursor]:
    """Build a cursor from a store LastEvaluatedKey (None when the result is exhausted)."""
    if not last_evaluated_key:
        return None
    if strategy not in _STRATEGIES:
        raise ValueError(f"Unknown retrieval strategy: {strategy}")
    cursor = PageCursor(
        strategy=strategy,
        blog_id=_key_string(last_evaluated_key, "blogId"),
        owner_id=_key_string(last_evaluated_key, "userId") if strategy == STRATEGY_OWNER else "",
        created_at=_key_string(last_evaluated_key, "createdAt") if strategy == STRATEGY_OWNER else "",
    )
    _check_complete(cursor, ValueError)
    return cursor


def cursor_from_item(strategy: str, item: Dict[str, Any]) -> PageCursor:
    """Build a cursor positioned after a (deserialized) entry."""
    if strategy not in _STRATEGIES:
        raise ValueError(f"Unknown retrieval strategy: {strategy}")
    cursor = PageCursor(
        strategy=strategy,
        blog_id=str(item.get("blogId") or ""),
        owner_id=str(item.get("userId") or "") if strategy == STRATEGY_OWNER else "",
        created_at=str(item.get("createdAt") or "") if strategy == STRATEGY_OWNER else "",
    )
    _check_complete(cursor, ValueError)
    return cursor


def _check_complete(cursor: PageCursor, error_cls) -> None:
    if not cursor.blog_id:
        raise error_cls("Pagination key is missing blogId.")
    if cursor.strategy == STRATEGY_OWNER and not (cursor.owner_id and cursor.created_at):
        raise error_cls("Pagination key is missing userId/createdAt.")


def encode_cursor(cursor: PageCursor) -> str:
    record: Dict[str, Any] = {"v": CURSOR_VERSION, "s": cursor.strategy, "id": cursor.blog_id}
    if cursor.strategy == STRATEGY_OWNER:
        record["o"] = cursor.owner_id
        record["c"] = cursor.created_at
    raw = json.dumps(record, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> PageCursor:
    if not isinstance(token, str) or not token.strip():
        raise InvalidCursorError("Invalid pagination token.")
    token = token.strip()
    if len(token) > MAX_TOKEN_LENGTH:
        raise InvalidCursorError("Invalid pagination token.")

    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        record = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidCursorError("Invalid pagination token.") from exc

    if not isinstance(record, dict) or record.get("v") != CURSOR_VERSION:
        raise InvalidCursorError("Unsupported pagination token version.")

    strategy = record.get("s")
    if strategy not in _STRATEGIES:
        raise InvalidCursorError("Invalid pagination token.")

    fields = {name: record.get(name, "") for name in ("id", "o", "c")}
    if not all(isinstance(value, str) for value in fields.values()):
        raise InvalidCursorError("Invalid pagination token.")

    cursor = PageCursor(
        strategy=strategy,
        blog_id=fields["id"],
        owner_id=fields["o"] if strategy == STRATEGY_OWNER else "",
        created_at=fields["c"] if strategy == STRATEGY_OWNER else "",
    )
    _check_complete(cursor, InvalidCursorError)
    return cursor
