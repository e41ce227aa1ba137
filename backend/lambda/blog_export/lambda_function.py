"""blog_export/lambda_function.py

Lambda API that exports the caller's own journal entries to S3 and returns
a presigned download link.

Routes (via API Gateway proxy):
    GET     /blogs/export?format=json|markdown|html|pdf
                         &startDate=&endDate=&tag=&mood=
    OPTIONS /blogs/export

``pdf`` renders the HTML document; conversion happens client-side.

Exports are written to:
    s3://{EXPORT_BUCKET}/exports/{userId}/export-{username}-{timestamp}.{ext}
"""

from __future__ import annotations

import datetime as dt
import html
import json
import logging
import re
from typing import Any, Dict, List, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from journal_shared.auth import _authenticate
from journal_shared.aws_clients import _get_ddb, _get_s3
from journal_shared.config import get_config
from journal_shared.entry_query import EntryQuery, EntryQueryService, parse_filters
from journal_shared.errors import InvalidQueryError
from journal_shared.http_utils import _cors_headers, _error, _path_method, _response
from journal_shared.media import MediaStore
from journal_shared.observability import emit_event

logger = logging.getLogger()
logger.setLevel(logging.INFO)

_FILENAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")

_HTML_STYLE = (
    "body { font-family: Arial, sans-serif; line-height: 1.6; max-width: 800px; margin: 0 auto; padding: 20px; }\n"
    "h1 { text-align: center; margin-bottom: 30px; }\n"
    ".blog-entry { margin-bottom: 30px; }\n"
    ".meta { color: #666; font-size: 0.9em; margin-bottom: 15px; }\n"
    ".tag { background: #f0f0f0; padding: 2px 8px; border-radius: 3px; margin-right: 5px; }\n"
    "hr { border: 0; border-top: 1px solid #eee; margin: 30px 0; }"
)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _display_date(created_at: str) -> str:
    try:
        return dt.datetime.fromisoformat(created_at.replace("Z", "+00:00")).strftime("%Y-%m-%d")
    except (AttributeError, ValueError):
        return str(created_at or "")


def format_markdown(entries: List[Dict[str, Any]]) -> str:
    parts = []
    for entry in entries:
        lines = [f"# {entry.get('title', '')}", "", _display_date(entry.get("createdAt", ""))]
        if entry.get("mood"):
            lines.append(f"Mood: {entry['mood']}")
        if entry.get("tags"):
            lines.append(f"Tags: {', '.join(entry['tags'])}")
        lines.extend(["", str(entry.get("content", "")), "", "---", "", ""])
        parts.append("\n".join(lines))
    return "".join(parts)


def format_html(entries: List[Dict[str, Any]]) -> str:
    articles = []
    for entry in entries:
        created = str(entry.get("createdAt", ""))
        meta = [f'<time datetime="{html.escape(created)}">{html.escape(_display_date(created))}</time>']
        if entry.get("mood"):
            meta.append(f"<p><strong>Mood:</strong> {html.escape(entry['mood'])}</p>")
        if entry.get("tags"):
            tags = " ".join(f'<span class="tag">{html.escape(t)}</span>' for t in entry["tags"])
            meta.append(f"<p><strong>Tags:</strong> {tags}</p>")
        body = html.escape(str(entry.get("content", ""))).replace("\n", "<br>")
        articles.append(
            '<article class="blog-entry">\n'
            f"  <h2>{html.escape(str(entry.get('title', '')))}</h2>\n"
            f'  <div class="meta">{"".join(meta)}</div>\n'
            f'  <div class="content">{body}</div>\n'
            "</article>\n<hr>\n"
        )
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n<head>\n'
        '<meta charset="UTF-8">\n'
        '<meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
        "<title>Journal Export</title>\n"
        f"<style>\n{_HTML_STYLE}\n</style>\n"
        "</head>\n<body>\n<h1>Journal Export</h1>\n"
        f"{''.join(articles)}"
        "</body>\n</html>\n"
    )


def format_json(entries: List[Dict[str, Any]]) -> str:
    return json.dumps(entries, indent=2, default=str)


# format -> (renderer, content type, extension)
_FORMATS = {
    "json": (format_json, "application/json", "json"),
    "markdown": (format_markdown, "text/markdown; charset=utf-8", "md"),
    "html": (format_html, "text/html; charset=utf-8", "html"),
    "pdf": (format_html, "text/html; charset=utf-8", "html"),
}


def render(entries: List[Dict[str, Any]], fmt: str) -> Tuple[str, str, str]:
    renderer, content_type, ext = _FORMATS[fmt]
    return renderer(entries), content_type, ext


def export_key(user_id: str, username: str, ext: str, now: dt.datetime) -> str:
    stamp = now.strftime("%Y-%m-%dT%H-%M-%SZ")
    safe_name = _FILENAME_UNSAFE_RE.sub("-", username or user_id).strip("-") or "user"
    return f"exports/{user_id}/export-{safe_name}-{stamp}.{ext}"


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


def _handle_export(event: Dict[str, Any], identity) -> Dict[str, Any]:
    config = get_config()
    qs = event.get("queryStringParameters") or {}
    fmt = str(qs.get("format") or "json").strip().lower()
    if fmt not in _FORMATS:
        return _error(400, f"Invalid format '{fmt}'. Expected one of: {', '.join(_FORMATS)}.")
    if not config.export_bucket:
        logger.error("export requested but neither EXPORT_BUCKET nor MEDIA_BUCKET is set")
        return _error(500, "Export storage is not configured.")

    try:
        predicates = parse_filters(qs, include_text=False)
    except InvalidQueryError as exc:
        return _error(400, str(exc))

    query = EntryQuery(
        caller_id=identity.user_id,
        page_size=config.max_page_size,
        predicates=tuple(predicates),
    )
    s3 = _get_s3(config)
    try:
        entries = EntryQueryService(config, _get_ddb(config)).collect(query)
        body, content_type, ext = render(entries, fmt)
        key = export_key(identity.user_id, identity.username, ext, dt.datetime.now(dt.timezone.utc))
        s3.put_object(
            Bucket=config.export_bucket,
            Key=key,
            Body=body.encode("utf-8"),
            ContentType=content_type,
        )
        download_url = MediaStore(config, s3).presign_bucket(config.export_bucket, key)
    except (BotoCoreError, ClientError) as exc:
        logger.error("export failed: %s", exc)
        return _error(500, "Error exporting blog posts", cause=str(exc))

    emit_event(
        component="blog_export",
        event="export_written",
        user_id=identity.user_id,
        extra={"format": fmt, "count": len(entries), "key": key},
    )
    return _response(200, {
        "success": True,
        "message": "Export created successfully",
        "downloadUrl": download_url,
        "expiresIn": f"{config.presign_expiry_seconds} seconds",
        "format": fmt,
        "count": len(entries),
    })


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    method, raw_path = _path_method(event)
    logger.info("request parse: method=%s raw_path=%s", method, raw_path)

    if method == "OPTIONS":
        return {"statusCode": 204, "headers": _cors_headers(), "body": ""}

    identity, auth_err = _authenticate(event)
    if auth_err:
        return auth_err

    if method != "GET":
        return _error(405, f"Method {method} not allowed.")
    return _handle_export(event, identity)
