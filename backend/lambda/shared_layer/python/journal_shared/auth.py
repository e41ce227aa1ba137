"""journal_shared.auth — Caller identity from the API Gateway Cognito authorizer.

Token validation happens in API Gateway before the Lambda is invoked; the
authorizer attaches the verified claims to the event:

    REST API (v1):  requestContext.authorizer.claims
    HTTP API (v2):  requestContext.authorizer.jwt.claims

The claims are trusted as-is. The owner of an entry is always identified by
the ``sub`` claim. Viewer lists on shared entries may name a viewer either by
``sub`` or by (lower-cased) email, so a caller is matched on both.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from journal_shared.http_utils import _error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    email: str = ""
    username: str = ""
    groups: FrozenSet[str] = field(default_factory=frozenset)

    def principals(self) -> FrozenSet[str]:
        """Every viewer-list value that designates this caller."""
        values = {self.user_id}
        if self.email:
            values.add(normalize_principal(self.email))
        return frozenset(values)


def normalize_principal(value: Any) -> str:
    """Canonical viewer-list form: emails are case-insensitive, subject ids are not."""
    text = str(value or "").strip()
    if "@" in text:
        return text.lower()
    return text


def _parse_groups(raw: Any) -> FrozenSet[str]:
    if isinstance(raw, (list, tuple, set)):
        return frozenset(str(g) for g in raw if str(g).strip())
    text = str(raw or "").strip()
    if not text:
        return frozenset()
    # HTTP APIs flatten list claims to "[a b]"; REST APIs send "a,b".
    text = text.strip("[]")
    parts = text.replace(",", " ").split()
    return frozenset(p for p in parts if p)


def _extract_claims(event: Dict[str, Any]) -> Dict[str, Any]:
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    claims = authorizer.get("claims")
    if not isinstance(claims, dict):
        claims = (authorizer.get("jwt") or {}).get("claims")
    return claims if isinstance(claims, dict) else {}


def identity_from_event(event: Dict[str, Any]) -> Optional[CallerIdentity]:
    """Return the verified caller identity, or None when the event carries none."""
    claims = _extract_claims(event)
    sub = str(claims.get("sub") or "").strip()
    if not sub:
        return None
    return CallerIdentity(
        user_id=sub,
        email=str(claims.get("email") or "").strip(),
        username=str(claims.get("cognito:username") or claims.get("username") or "").strip(),
        groups=_parse_groups(claims.get("cognito:groups")),
    )


def _authenticate(
    event: Dict[str, Any],
    *,
    error_fn: Optional[Callable[[int, str], Dict[str, Any]]] = None,
) -> Tuple[Optional[CallerIdentity], Optional[Dict[str, Any]]]:
    """Resolve the caller identity.

    Returns (identity, None) on success or (None, error_response) on failure.
    """
    if error_fn is None:
        error_fn = _error

    identity = identity_from_event(event)
    if identity is None:
        logger.warning("request without authorizer claims rejected")
        return None, error_fn(401, "Authentication required. Please sign in.")
    return identity, None
