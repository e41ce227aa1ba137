"""journal_shared.errors — Errors raised by the layer for bad input and missing configuration.

Store failures are not wrapped: botocore's ClientError / BotoCoreError
propagate to the Lambda handler, which reports them as 500s.
"""

from __future__ import annotations


class InvalidQueryError(ValueError):
    """Raised when listing/search parameters cannot be turned into a query."""


class InvalidCursorError(InvalidQueryError):
    """Raised when a continuation token is malformed or was not issued for this query."""


class EntryValidationError(ValueError):
    """Raised when a create/update payload is not a valid entry."""


class MediaStorageNotConfiguredError(RuntimeError):
    """Raised when attachments are written or deleted without MEDIA_BUCKET set."""
