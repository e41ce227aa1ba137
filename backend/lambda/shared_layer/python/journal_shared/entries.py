"""journal_shared.entries — Entry records: validation, access checks, persistence.

Table layout (DynamoDB):
    blogs                 partition key: blogId
    userIdIndex (GSI)     partition key: userId, sort key: createdAt

An entry is written in full on create, mutated only by its owner, and
deleted (with its attachments) only by its owner. ``blogId``, ``userId``
and ``createdAt`` never change after creation.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from journal_shared.auth import CallerIdentity, normalize_principal
from journal_shared.config import JournalConfig
from journal_shared.errors import EntryValidationError
from journal_shared.serialization import _deserialize, _now_z, _serialize, _serialize_item

logger = logging.getLogger(__name__)

VISIBILITY_PRIVATE = "private"
VISIBILITY_SHARED = "shared"
VISIBILITY_PUBLIC = "public"
VISIBILITY_VALUES = (VISIBILITY_PRIVATE, VISIBILITY_SHARED, VISIBILITY_PUBLIC)

MOOD_VALUES = (
    "Happy",
    "Excited",
    "Grateful",
    "Relaxed",
    "Content",
    "Neutral",
    "Tired",
    "Anxious",
    "Sad",
    "Frustrated",
)

STATUS_PUBLISHED = "PUBLISHED"

MAX_TITLE_LENGTH = 500
MAX_TAGS = 50
MAX_TAG_LENGTH = 100
MAX_VIEWERS = 100

_IMMUTABLE_FIELDS = {"blogId", "userId", "createdAt"}
_MUTABLE_FIELDS = ("title", "content", "tags", "mood", "visibility", "sharedWith", "imageUrls")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _text(payload: Dict[str, Any], name: str, *, required: bool) -> Optional[str]:
    value = payload.get(name)
    if value is None:
        if required:
            raise EntryValidationError(f"Field '{name}' is required.")
        return None
    if not isinstance(value, str):
        raise EntryValidationError(f"Field '{name}' must be a string.")
    if required and not value.strip():
        raise EntryValidationError(f"Field '{name}' is required.")
    return value


def _title(payload: Dict[str, Any], *, required: bool) -> Optional[str]:
    title = _text(payload, "title", required=required)
    if title is None:
        return None
    title = title.strip()
    if not title:
        raise EntryValidationError("Field 'title' must not be empty.")
    if len(title) > MAX_TITLE_LENGTH:
        raise EntryValidationError(f"Field 'title' exceeds {MAX_TITLE_LENGTH} characters.")
    return title


def _string_list(value: Any, name: str, limit: int) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise EntryValidationError(f"Field '{name}' must be a list of strings.")
    out: List[str] = []
    seen = set()
    for raw in value:
        if not isinstance(raw, str):
            raise EntryValidationError(f"Field '{name}' must be a list of strings.")
        text = raw.strip()
        if not text or text in seen:
            continue
        seen.add(text)
        out.append(text)
    if len(out) > limit:
        raise EntryValidationError(f"Field '{name}' accepts at most {limit} values.")
    return out


def _tags(value: Any) -> List[str]:
    tags = _string_list(value, "tags", MAX_TAGS)
    for tag in tags:
        if len(tag) > MAX_TAG_LENGTH:
            raise EntryValidationError(f"Tag exceeds {MAX_TAG_LENGTH} characters: {tag[:20]}...")
    return tags


def _viewers(value: Any) -> List[str]:
    viewers = [normalize_principal(v) for v in _string_list(value, "sharedWith", MAX_VIEWERS)]
    return list(dict.fromkeys(viewers))


def _mood(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise EntryValidationError("Field 'mood' must be a string.")
    mood = value.strip()
    if not mood:
        return None
    if mood not in MOOD_VALUES:
        raise EntryValidationError(
            f"Invalid mood '{mood}'. Expected one of: {', '.join(MOOD_VALUES)}."
        )
    return mood


def _visibility(value: Any) -> str:
    visibility = str(value or "").strip().lower()
    if visibility not in VISIBILITY_VALUES:
        raise EntryValidationError(
            f"Invalid visibility '{value}'. Expected one of: {', '.join(VISIBILITY_VALUES)}."
        )
    return visibility


def validate_new_entry(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a create payload into entry fields (attachments excluded)."""
    fields: Dict[str, Any] = {
        "title": _title(payload, required=True),
        "content": _text(payload, "content", required=True),
        "visibility": _visibility(payload.get("visibility") or VISIBILITY_PRIVATE),
        "tags": _tags(payload.get("tags") or []),
        "sharedWith": _viewers(payload.get("sharedWith") or []),
    }
    mood = _mood(payload.get("mood"))
    if mood:
        fields["mood"] = mood
    return fields


def validate_entry_patch(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize an update payload; only supplied, non-empty fields are returned."""
    for name in _IMMUTABLE_FIELDS:
        if name in payload:
            raise EntryValidationError(f"Field '{name}' cannot be changed.")
    changes: Dict[str, Any] = {}
    if payload.get("title") is not None:
        changes["title"] = _title(payload, required=False)
    if payload.get("content") is not None:
        content = _text(payload, "content", required=True)
        changes["content"] = content
    if payload.get("visibility"):
        changes["visibility"] = _visibility(payload["visibility"])
    if payload.get("tags") is not None:
        changes["tags"] = _tags(payload["tags"])
    mood = _mood(payload.get("mood"))
    if mood:
        changes["mood"] = mood
    if payload.get("sharedWith") is not None:
        changes["sharedWith"] = _viewers(payload["sharedWith"])
    return changes


def new_entry(identity: CallerIdentity, fields: Dict[str, Any], image_keys: Optional[List[str]] = None, *, blog_id: Optional[str] = None) -> Dict[str, Any]:
    now = _now_z()
    entry: Dict[str, Any] = {
        "blogId": blog_id or str(uuid.uuid4()),
        "userId": identity.user_id,
        "username": identity.username or identity.user_id,
        "imageUrls": list(image_keys or []),
        "createdAt": now,
        "updatedAt": now,
        "status": STATUS_PUBLISHED,
    }
    entry.update(fields)
    return entry


# ---------------------------------------------------------------------------
# Access checks
# ---------------------------------------------------------------------------


def is_owner(entry: Dict[str, Any], identity: CallerIdentity) -> bool:
    return bool(entry.get("userId")) and entry.get("userId") == identity.user_id


def can_read(entry: Dict[str, Any], identity: CallerIdentity) -> bool:
    if is_owner(entry, identity):
        return True
    visibility = entry.get("visibility") or VISIBILITY_PRIVATE
    if visibility == VISIBILITY_PUBLIC:
        return True
    if visibility == VISIBILITY_SHARED:
        viewers = {normalize_principal(v) for v in entry.get("sharedWith") or []}
        return bool(viewers & identity.principals())
    return False


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class EntryStore:
    def __init__(self, config: JournalConfig, ddb):
        self.config = config
        self.ddb = ddb

    def _key(self, blog_id: str) -> Dict[str, Any]:
        return {"blogId": _serialize(blog_id)}

    def get(self, blog_id: str) -> Optional[Dict[str, Any]]:
        resp = self.ddb.get_item(TableName=self.config.blogs_table, Key=self._key(blog_id))
        raw = resp.get("Item")
        if not raw:
            return None
        return _deserialize(raw)

    def put_new(self, entry: Dict[str, Any]) -> None:
        self.ddb.put_item(
            TableName=self.config.blogs_table,
            Item=_serialize_item(entry),
            ConditionExpression="attribute_not_exists(blogId)",
        )

    def update(self, blog_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply field changes and refresh updatedAt. Returns the stored entry."""
        names: Dict[str, str] = {"#updatedAt": "updatedAt"}
        values: Dict[str, Any] = {":updatedAt": _serialize(_now_z())}
        clauses = ["#updatedAt = :updatedAt"]
        for name in _MUTABLE_FIELDS:
            if name not in changes:
                continue
            names[f"#{name}"] = name
            values[f":{name}"] = _serialize(changes[name])
            clauses.append(f"#{name} = :{name}")

        resp = self.ddb.update_item(
            TableName=self.config.blogs_table,
            Key=self._key(blog_id),
            UpdateExpression="SET " + ", ".join(clauses),
            ConditionExpression="attribute_exists(blogId)",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ReturnValues="ALL_NEW",
        )
        return _deserialize(resp.get("Attributes") or {})

    def delete(self, blog_id: str) -> None:
        self.ddb.delete_item(TableName=self.config.blogs_table, Key=self._key(blog_id))


def is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"
