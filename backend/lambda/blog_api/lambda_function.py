"""blog_api/lambda_function.py

Lambda API for journal entries (blog posts).

Routes (via API Gateway proxy):
    POST    /blogs                  create entry
    GET     /blogs                  list entries (paged, filtered)
    GET     /blogs/search?q=        search own + public entries (paged)
    GET     /blogs/{blogId}         retrieve entry (visibility enforced)
    PUT     /blogs/{blogId}         update entry (owner only; PATCH accepted)
    DELETE  /blogs/{blogId}         delete entry and attachments (owner only)
    OPTIONS /blogs[/*]              CORS preflight

List query parameters:
    limit, nextToken, visibility (all|private|shared|public), tag, mood,
    startDate, endDate, q

Auth:
    API Gateway Cognito authorizer; the verified claims (sub, email,
    cognito:username) identify the caller.

Environment variables: see journal_shared.config.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from journal_shared.auth import CallerIdentity, _authenticate
from journal_shared.aws_clients import _get_ddb, _get_s3
from journal_shared.config import get_config
from journal_shared.entries import (
    EntryStore,
    can_read,
    is_conditional_failure,
    is_owner,
    new_entry,
    validate_entry_patch,
    validate_new_entry,
)
from journal_shared.entry_query import EntryQueryService, parse_list_params, parse_search_params
from journal_shared.errors import EntryValidationError, InvalidQueryError, MediaStorageNotConfiguredError
from journal_shared.http_utils import _cors_headers, _error, _json_body, _path_method, _response
from journal_shared.media import MediaStore
from journal_shared.observability import emit_event

logger = logging.getLogger()
logger.setLevel(logging.INFO)

_BLOG_PATH_RE = re.compile(r"/blogs(?:/(?P<blogId>[^/]+))?/?$")
_RESERVED_SEGMENTS = {"search", "export"}


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


def _entry_store() -> EntryStore:
    config = get_config()
    return EntryStore(config, _get_ddb(config))


def _query_service() -> EntryQueryService:
    config = get_config()
    return EntryQueryService(config, _get_ddb(config))


def _media_store() -> MediaStore:
    config = get_config()
    return MediaStore(config, _get_s3(config))


def _store_error(action: str, exc: Exception) -> Dict[str, Any]:
    logger.error("%s failed: %s", action, exc)
    code = ""
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
    emit_event(component="blog_api", event="store_error", error_code=code or type(exc).__name__)
    return _error(500, f"Error {action}", cause=str(exc))


def _media_unconfigured(exc: Exception) -> Dict[str, Any]:
    logger.error("media storage unavailable: %s", exc)
    emit_event(component="blog_api", event="store_error", error_code="MediaStorageNotConfigured")
    return _error(500, "Media storage is not configured.")


# ---------------------------------------------------------------------------
# GET: list, search, single entry
# ---------------------------------------------------------------------------


def _handle_list(identity: CallerIdentity, qs: Dict[str, Any]) -> Dict[str, Any]:
    config = get_config()
    try:
        query = parse_list_params(identity.user_id, qs, config)
    except InvalidQueryError as exc:
        return _error(400, str(exc))
    try:
        page = _query_service().list_page(query)
    except InvalidQueryError as exc:
        return _error(400, str(exc))
    except (BotoCoreError, ClientError) as exc:
        return _store_error("listing blog posts", exc)
    return _response(200, page.to_payload())


def _handle_search(identity: CallerIdentity, qs: Dict[str, Any]) -> Dict[str, Any]:
    config = get_config()
    try:
        query = parse_search_params(identity.user_id, qs, config)
    except InvalidQueryError as exc:
        return _error(400, str(exc))
    try:
        page = _query_service().search_page(query)
    except InvalidQueryError as exc:
        return _error(400, str(exc))
    except (BotoCoreError, ClientError) as exc:
        return _store_error("searching blog posts", exc)
    return _response(200, page.to_payload())


def _handle_get(identity: CallerIdentity, blog_id: str) -> Dict[str, Any]:
    try:
        entry = _entry_store().get(blog_id)
    except (BotoCoreError, ClientError) as exc:
        return _store_error("getting blog post", exc)

    if entry is None:
        return _error(404, "Blog post not found")
    if not can_read(entry, identity):
        return _error(403, "You do not have permission to view this blog post")

    if not is_owner(entry, identity):
        entry.pop("sharedWith", None)
    keys = entry.get("imageUrls") or []
    if keys and get_config().media_bucket:
        try:
            entry["attachments"] = _media_store().resolve(keys)
        except (BotoCoreError, ClientError) as exc:
            return _store_error("getting blog post", exc)

    return _response(200, {"success": True, "blog": entry})


# ---------------------------------------------------------------------------
# POST: create
# ---------------------------------------------------------------------------


def _handle_create(event: Dict[str, Any], identity: CallerIdentity) -> Dict[str, Any]:
    try:
        body = _json_body(event)
        fields = validate_new_entry(body)
    except ValueError as exc:
        return _error(400, str(exc))

    entry = new_entry(identity, fields)
    media = _media_store()
    try:
        entry["imageUrls"] = media.upload_images(entry["blogId"], body.get("imageBase64"))
    except EntryValidationError as exc:
        return _error(400, str(exc))
    except MediaStorageNotConfiguredError as exc:
        return _media_unconfigured(exc)
    except (BotoCoreError, ClientError) as exc:
        return _store_error("creating blog post", exc)

    try:
        _entry_store().put_new(entry)
    except (BotoCoreError, ClientError) as exc:
        media.delete_objects(entry["imageUrls"])
        return _store_error("creating blog post", exc)

    emit_event(
        component="blog_api",
        event="entry_created",
        user_id=identity.user_id,
        blog_id=entry["blogId"],
        extra={"visibility": entry["visibility"], "images": len(entry["imageUrls"])},
    )
    return _response(201, {
        "success": True,
        "message": "Blog post created successfully",
        "blogId": entry["blogId"],
        "createdAt": entry["createdAt"],
    })


# ---------------------------------------------------------------------------
# PUT/PATCH: update
# ---------------------------------------------------------------------------


def _load_owned(identity: CallerIdentity, blog_id: str, verb: str, action: str) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    try:
        entry = _entry_store().get(blog_id)
    except (BotoCoreError, ClientError) as exc:
        return None, _store_error(action, exc)
    if entry is None:
        return None, _error(404, "Blog post not found")
    if not is_owner(entry, identity):
        return None, _error(403, f"You do not have permission to {verb} this blog post")
    return entry, None


def _handle_update(event: Dict[str, Any], identity: CallerIdentity, blog_id: str) -> Dict[str, Any]:
    try:
        body = _json_body(event)
        changes = validate_entry_patch(body)
    except ValueError as exc:
        return _error(400, str(exc))

    entry, err = _load_owned(identity, blog_id, "update", "updating blog post")
    if err:
        return err

    media = _media_store()
    try:
        new_keys = media.upload_images(blog_id, body.get("imageBase64"))
    except EntryValidationError as exc:
        return _error(400, str(exc))
    except MediaStorageNotConfiguredError as exc:
        return _media_unconfigured(exc)
    except (BotoCoreError, ClientError) as exc:
        return _store_error("updating blog post", exc)
    if new_keys:
        changes["imageUrls"] = list(entry.get("imageUrls") or []) + new_keys

    try:
        updated = _entry_store().update(blog_id, changes)
    except ClientError as exc:
        media.delete_objects(new_keys)
        if is_conditional_failure(exc):
            return _error(404, "Blog post not found")
        return _store_error("updating blog post", exc)
    except BotoCoreError as exc:
        media.delete_objects(new_keys)
        return _store_error("updating blog post", exc)

    emit_event(
        component="blog_api",
        event="entry_updated",
        user_id=identity.user_id,
        blog_id=blog_id,
        extra={"fields": sorted(changes)},
    )
    return _response(200, {
        "success": True,
        "message": "Blog post updated successfully",
        "blogId": blog_id,
        "blog": updated,
    })


# ---------------------------------------------------------------------------
# DELETE
# ---------------------------------------------------------------------------


def _handle_delete(identity: CallerIdentity, blog_id: str) -> Dict[str, Any]:
    entry, err = _load_owned(identity, blog_id, "delete", "deleting blog post")
    if err:
        return err

    try:
        _media_store().delete_objects(entry.get("imageUrls") or [])
        _entry_store().delete(blog_id)
    except MediaStorageNotConfiguredError as exc:
        return _media_unconfigured(exc)
    except (BotoCoreError, ClientError) as exc:
        return _store_error("deleting blog post", exc)

    emit_event(component="blog_api", event="entry_deleted", user_id=identity.user_id, blog_id=blog_id)
    return _response(200, {
        "success": True,
        "message": "Blog post deleted successfully",
        "blogId": blog_id,
    })


# ---------------------------------------------------------------------------
# Path parsing
# ---------------------------------------------------------------------------


def _parse_request(event: Dict[str, Any]) -> Tuple[str, Optional[str], Optional[str], Dict[str, Any]]:
    """Return (method, route, blog_id, query params); route is None for unknown paths."""
    method, raw_path = _path_method(event)
    path_params = event.get("pathParameters") or {}
    qs = event.get("queryStringParameters") or {}

    blog_id = path_params.get("blogId") or path_params.get("blog_id")
    if blog_id:
        route = "entry"
    else:
        # Tolerate stage prefixes and custom domain base paths.
        match = _BLOG_PATH_RE.search(raw_path)
        if not match:
            route = None
        else:
            blog_id = match.group("blogId")
            route = "entry" if blog_id else "collection"
    if blog_id in _RESERVED_SEGMENTS:
        route, blog_id = blog_id, None

    logger.info(
        "request parse: method=%s raw_path=%s route=%s blog_id=%s qs_keys=%s",
        method, raw_path, route, blog_id, sorted(qs.keys()),
    )
    return method, route, blog_id, qs


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    started = time.time()
    method, route, blog_id, qs = _parse_request(event)

    if method == "OPTIONS":
        return {"statusCode": 204, "headers": _cors_headers(), "body": ""}

    identity, auth_err = _authenticate(event)
    if auth_err:
        return auth_err

    if route == "collection":
        if method == "GET":
            resp = _handle_list(identity, qs)
        elif method == "POST":
            resp = _handle_create(event, identity)
        else:
            resp = _error(405, f"Method {method} not allowed.")
    elif route == "search":
        resp = _handle_search(identity, qs) if method == "GET" else _error(405, f"Method {method} not allowed.")
    elif route == "entry":
        if method == "GET":
            resp = _handle_get(identity, blog_id)
        elif method in ("PUT", "PATCH"):
            resp = _handle_update(event, identity, blog_id)
        elif method == "DELETE":
            resp = _handle_delete(identity, blog_id)
        else:
            resp = _error(405, f"Method {method} not allowed.")
    else:
        resp = _error(404, "Route not found.")

    emit_event(
        component="blog_api",
        event="request_complete",
        user_id=identity.user_id,
        blog_id=blog_id,
        latency_ms=int((time.time() - started) * 1000),
        extra={"method": method, "route": route or "", "status": resp["statusCode"]},
    )
    return resp
