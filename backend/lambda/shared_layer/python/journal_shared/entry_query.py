"""journal_shared.entry_query — Listing/search query construction and paging.

A listing request is turned into exactly one DynamoDB ``Query`` (owner
index, newest first) or ``Scan`` (public entries, search). Optional filters
are typed predicates folded into a single conjunctive FilterExpression with
the boto3 condition builder. Filters are applied by DynamoDB after the key
retrieval, so ``Limit`` bounds the items *read*, not the items returned: a
page may hold fewer than ``page_size`` items and still carry a token.

Each call reads ``page_size + 1`` items. When the extra item comes back the
page is trimmed and the token points at the last item returned, so a token
is only issued when another item is known to exist or DynamoDB stopped early.

Continuation tokens are only checked for shape, strategy and owner. Replaying
a token with a different filter combination is the caller's responsibility.
"""

from __future__ import annotations

import functools
import logging
import operator
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from boto3.dynamodb.conditions import Attr, ConditionBase, ConditionExpressionBuilder, Key

from journal_shared.config import JournalConfig
from journal_shared.cursor import (
    STRATEGY_OWNER,
    STRATEGY_SCAN,
    PageCursor,
    cursor_from_item,
    cursor_from_key,
    decode_cursor,
    encode_cursor,
)
from journal_shared.entries import VISIBILITY_PUBLIC, VISIBILITY_VALUES
from journal_shared.errors import InvalidCursorError, InvalidQueryError
from journal_shared.observability import emit_event
from journal_shared.serialization import _deserialize, _parse_iso8601, _serialize

logger = logging.getLogger(__name__)

SCOPE_ALL = "all"
SCOPES = (SCOPE_ALL,) + VISIBILITY_VALUES

_END_OF_DAY = "T23:59:59Z"
_STORED_TIMESTAMP = "%Y-%m-%dT%H:%M:%SZ"

# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VisibilityEquals:
    visibility: str
    kind = "visibility"

    def condition(self) -> ConditionBase:
        return Attr("visibility").eq(self.visibility)


@dataclass(frozen=True)
class TagContains:
    tag: str
    kind = "tag"

    def condition(self) -> ConditionBase:
        return Attr("tags").contains(self.tag)


@dataclass(frozen=True)
class MoodEquals:
    mood: str
    kind = "mood"

    def condition(self) -> ConditionBase:
        return Attr("mood").eq(self.mood)


@dataclass(frozen=True)
class DateRange:
    """Inclusive createdAt bounds; either side may be open."""

    start: Optional[str] = None
    end: Optional[str] = None
    kind = "date_range"

    def condition(self) -> ConditionBase:
        created = Attr("createdAt")
        if self.start and self.end:
            return created.between(self.start, self.end)
        if self.start:
            return created.gte(self.start)
        return created.lte(self.end)


@dataclass(frozen=True)
class TextContains:
    """Case-sensitive substring match on title, content or a whole tag."""

    text: str
    kind = "text"

    def condition(self) -> ConditionBase:
        return (
            Attr("title").contains(self.text)
            | Attr("content").contains(self.text)
            | Attr("tags").contains(self.text)
        )


@dataclass(frozen=True)
class OwnerOrPublic:
    owner_id: str
    kind = "owner_or_public"

    def condition(self) -> ConditionBase:
        return Attr("userId").eq(self.owner_id) | Attr("visibility").eq(VISIBILITY_PUBLIC)


def conjunction(predicates) -> Optional[ConditionBase]:
    """AND the predicates' conditions together (None for an empty list)."""
    conditions = [p.condition() for p in predicates]
    if not conditions:
        return None
    return functools.reduce(operator.and_, conditions)


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntryQuery:
    caller_id: str
    page_size: int
    scope: str = SCOPE_ALL
    cursor: Optional[PageCursor] = None
    predicates: Tuple[Any, ...] = field(default_factory=tuple)


def _param(params: Mapping[str, Any], name: str) -> Optional[str]:
    value = params.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def clamp_page_size(raw: Any, config: JournalConfig) -> int:
    """Parse ``limit``; junk or non-positive values fall back to the default."""
    try:
        size = int(str(raw).strip())
    except (TypeError, ValueError):
        return config.default_page_size
    if size < 1:
        return config.default_page_size
    return min(size, config.max_page_size)


def parse_date_range(start: Optional[str], end: Optional[str]) -> Optional[DateRange]:
    if not start and not end:
        return None
    start_dt = end_dt = None
    if start:
        start_dt = _parse_iso8601(start)
        if start_dt is None:
            raise InvalidQueryError(f"Invalid startDate: {start}")
    if end:
        raw_end = end
        if len(end) == 10:
            # A bare date ends after the last timestamp written on that day.
            end = end + _END_OF_DAY
        end_dt = _parse_iso8601(end)
        if end_dt is None:
            raise InvalidQueryError(f"Invalid endDate: {raw_end}")
    if start_dt and end_dt and start_dt > end_dt:
        raise InvalidQueryError("startDate must not be after endDate.")
    # createdAt is compared as text, so bounds must share its UTC "Z" form.
    return DateRange(
        start=start_dt.strftime(_STORED_TIMESTAMP) if start_dt else None,
        end=end_dt.strftime(_STORED_TIMESTAMP) if end_dt else None,
    )


def parse_filters(params: Mapping[str, Any], *, include_text: bool = True) -> List[Any]:
    """Turn optional query-string filters into predicates (blank means absent)."""
    predicates: List[Any] = []
    tag = _param(params, "tag")
    if tag:
        predicates.append(TagContains(tag))
    mood = _param(params, "mood")
    if mood:
        predicates.append(MoodEquals(mood))
    date_range = parse_date_range(_param(params, "startDate"), _param(params, "endDate"))
    if date_range:
        predicates.append(date_range)
    if include_text:
        text = _param(params, "q")
        if text:
            predicates.append(TextContains(text))
    return predicates


def _parse_cursor(params: Mapping[str, Any]) -> Optional[PageCursor]:
    token = _param(params, "nextToken")
    if token is None:
        return None
    return decode_cursor(token)


def parse_list_params(caller_id: str, params: Optional[Mapping[str, Any]], config: JournalConfig) -> EntryQuery:
    params = params or {}
    if not caller_id:
        raise InvalidQueryError("Caller identity is required.")
    scope = (_param(params, "visibility") or SCOPE_ALL).lower()
    if scope not in SCOPES:
        raise InvalidQueryError(
            f"Invalid visibility '{scope}'. Expected one of: {', '.join(SCOPES)}."
        )
    return EntryQuery(
        caller_id=caller_id,
        page_size=clamp_page_size(params.get("limit"), config),
        scope=scope,
        cursor=_parse_cursor(params),
        predicates=tuple(parse_filters(params)),
    )


def parse_search_params(caller_id: str, params: Optional[Mapping[str, Any]], config: JournalConfig) -> EntryQuery:
    params = params or {}
    if not caller_id:
        raise InvalidQueryError("Caller identity is required.")
    text = _param(params, "q")
    if not text:
        raise InvalidQueryError("Search term is required")
    predicates = [TextContains(text), OwnerOrPublic(caller_id)]
    predicates.extend(parse_filters(params, include_text=False))
    return EntryQuery(
        caller_id=caller_id,
        page_size=clamp_page_size(params.get("limit"), config),
        scope=SCOPE_ALL,
        cursor=_parse_cursor(params),
        predicates=tuple(predicates),
    )


# ---------------------------------------------------------------------------
# Query plans
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryPlan:
    """One store call: ``operation`` is ``query`` or ``scan``; ``params`` are its kwargs."""

    operation: str
    strategy: str
    params: Dict[str, Any]


def _expression_params(
    key_condition: Optional[ConditionBase],
    filter_condition: Optional[ConditionBase],
) -> Dict[str, Any]:
    builder = ConditionExpressionBuilder()
    names: Dict[str, str] = {}
    values: Dict[str, Any] = {}
    params: Dict[str, Any] = {}
    if key_condition is not None:
        built = builder.build_expression(key_condition, is_key_condition=True)
        params["KeyConditionExpression"] = built.condition_expression
        names.update(built.attribute_name_placeholders)
        values.update(built.attribute_value_placeholders)
    if filter_condition is not None:
        built = builder.build_expression(filter_condition)
        params["FilterExpression"] = built.condition_expression
        names.update(built.attribute_name_placeholders)
        values.update(built.attribute_value_placeholders)
    if names:
        params["ExpressionAttributeNames"] = names
    if values:
        params["ExpressionAttributeValues"] = {k: _serialize(v) for k, v in values.items()}
    return params


def _check_cursor(query: EntryQuery, strategy: str) -> None:
    cursor = query.cursor
    if cursor is None:
        return
    if cursor.strategy != strategy:
        raise InvalidCursorError("Pagination token does not belong to this query.")
    if strategy == STRATEGY_OWNER and cursor.owner_id != query.caller_id:
        raise InvalidCursorError("Pagination token does not belong to this query.")


def build_list_plan(query: EntryQuery, config: JournalConfig) -> QueryPlan:
    predicates = list(query.predicates)
    if query.scope == VISIBILITY_PUBLIC:
        strategy = STRATEGY_SCAN
        predicates.insert(0, VisibilityEquals(VISIBILITY_PUBLIC))
        key_condition = None
    else:
        strategy = STRATEGY_OWNER
        if query.scope != SCOPE_ALL:
            predicates.insert(0, VisibilityEquals(query.scope))
        key_condition = Key("userId").eq(query.caller_id)
    return _plan(query, config, strategy, key_condition, predicates)


def build_search_plan(query: EntryQuery, config: JournalConfig) -> QueryPlan:
    return _plan(query, config, STRATEGY_SCAN, None, list(query.predicates))


def build_owner_plan(query: EntryQuery, config: JournalConfig) -> QueryPlan:
    """Owner-index plan regardless of scope (used by export)."""
    return _plan(query, config, STRATEGY_OWNER, Key("userId").eq(query.caller_id), list(query.predicates))


def _plan(query, config, strategy, key_condition, predicates) -> QueryPlan:
    _check_cursor(query, strategy)
    # One look-ahead item tells a full last page apart from a truncated one.
    params: Dict[str, Any] = {"TableName": config.blogs_table, "Limit": query.page_size + 1}
    if strategy == STRATEGY_OWNER:
        params["IndexName"] = config.owner_index
        params["ScanIndexForward"] = False
    params.update(_expression_params(key_condition, conjunction(predicates)))
    if query.cursor is not None:
        params["ExclusiveStartKey"] = query.cursor.to_exclusive_start_key()
    operation = "query" if strategy == STRATEGY_OWNER else "scan"
    return QueryPlan(operation=operation, strategy=strategy, params=params)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@dataclass
class EntryPage:
    items: List[Dict[str, Any]]
    next_token: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.items)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": True, "items": self.items, "count": self.count}
        if self.next_token:
            payload["nextToken"] = self.next_token
        return payload


class EntryQueryService:
    """Runs query plans against the entries table, one store call per page."""

    def __init__(self, config: JournalConfig, ddb):
        self.config = config
        self.ddb = ddb

    def execute(self, plan: QueryPlan, query: EntryQuery) -> EntryPage:
        emit_event(
            component="entry_query",
            event="query_issued",
            user_id=query.caller_id,
            extra={
                "operation": plan.operation,
                "scope": query.scope,
                "page_size": query.page_size,
                "predicates": [p.kind for p in query.predicates],
                "resumed": query.cursor is not None,
            },
        )
        call = self.ddb.query if plan.operation == "query" else self.ddb.scan
        resp = call(**plan.params)

        items = [_deserialize(raw) for raw in resp.get("Items", [])]
        if len(items) > query.page_size:
            # The look-ahead item matched, so more data exists; resume after the
            # last item handed out rather than after the look-ahead.
            items = items[: query.page_size]
            next_cursor = cursor_from_item(plan.strategy, items[-1])
        else:
            next_cursor = cursor_from_key(plan.strategy, resp.get("LastEvaluatedKey"))
        if plan.strategy == STRATEGY_SCAN:
            items.sort(key=lambda item: str(item.get("createdAt") or ""), reverse=True)
        return EntryPage(items=items, next_token=encode_cursor(next_cursor) if next_cursor else None)

    def list_page(self, query: EntryQuery) -> EntryPage:
        return self.execute(build_list_plan(query, self.config), query)

    def search_page(self, query: EntryQuery) -> EntryPage:
        return self.execute(build_search_plan(query, self.config), query)

    def iter_owner_pages(self, query: EntryQuery) -> Iterator[EntryPage]:
        """Follow continuation tokens over the owner index until exhausted."""
        while True:
            page = self.execute(build_owner_plan(query, self.config), query)
            yield page
            if not page.next_token:
                return
            query = EntryQuery(
                caller_id=query.caller_id,
                page_size=query.page_size,
                scope=query.scope,
                cursor=decode_cursor(page.next_token),
                predicates=query.predicates,
            )

    def collect(self, query: EntryQuery) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for page in self.iter_owner_pages(query):
            items.extend(page.items)
        return items
