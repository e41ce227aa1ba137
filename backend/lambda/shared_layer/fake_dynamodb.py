"""fake_dynamodb.py — In-memory stand-in for the DynamoDB client used in tests.

Implements the paging contract the journal Lambdas rely on: ``Limit``,
``ExclusiveStartKey``/``LastEvaluatedKey``, ``ScanIndexForward`` and the
owner-index key condition. Like DynamoDB, a response carries a
LastEvaluatedKey whenever it stopped because ``Limit`` was reached, even if
nothing is left. FilterExpressions (comparisons, BETWEEN, contains, AND/OR)
are applied after ``Limit``, so a filtered page can be short or empty and
still carry a LastEvaluatedKey.
"""

from __future__ import annotations

import copy
import operator
import re
from typing import Any, Callable, Dict, List, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

_SER = TypeSerializer()
_DESER = TypeDeserializer()
_KEY_CONDITION_RE = re.compile(r"(#\w+) = (:\w+)")


def entry(blog_id: str, user_id: str, created_at: str, **fields: Any) -> Dict[str, Any]:
    item = {
        "blogId": blog_id,
        "userId": user_id,
        "createdAt": created_at,
        "updatedAt": created_at,
        "title": fields.pop("title", f"Entry {blog_id}"),
        "content": fields.pop("content", "body"),
        "tags": fields.pop("tags", []),
        "visibility": fields.pop("visibility", "private"),
        "sharedWith": fields.pop("sharedWith", []),
        "imageUrls": fields.pop("imageUrls", []),
        "status": "PUBLISHED",
    }
    item.update(fields)
    return item


_FILTER_TOKEN_RE = re.compile(r"#\w+|:\w+|contains|BETWEEN|AND|OR|<>|<=|>=|[()=<>,]")
_COMPARISONS = {
    "=": operator.eq,
    "<>": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

Predicate = Callable[[Dict[str, Any]], bool]


def _contains(actual: Any, value: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(value, str) and value in actual
    if isinstance(actual, (list, set)):
        return value in actual
    return False


class _FilterParser:
    """Recursive-descent parser for the FilterExpressions boto3's builder emits."""

    def __init__(self, expression: str, names: Dict[str, str], values: Dict[str, Any]):
        self.tokens = _FILTER_TOKEN_RE.findall(expression)
        self.pos = 0
        self.names = names
        self.values = {k: _DESER.deserialize(v) for k, v in values.items()}

    def parse(self) -> Predicate:
        node = self._or()
        if self.pos != len(self.tokens):
            raise ValueError(f"unparsed filter tokens: {self.tokens[self.pos:]}")
        return node

    def _next(self, expected: Optional[str] = None) -> str:
        token = self.tokens[self.pos]
        if expected is not None and token != expected:
            raise ValueError(f"expected {expected!r}, got {token!r}")
        self.pos += 1
        return token

    def _peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _or(self) -> Predicate:
        node = self._and()
        while self._peek() == "OR":
            self._next()
            left, right = node, self._and()
            node = lambda item, l=left, r=right: l(item) or r(item)
        return node

    def _and(self) -> Predicate:
        node = self._primary()
        while self._peek() == "AND":
            self._next()
            left, right = node, self._primary()
            node = lambda item, l=left, r=right: l(item) and r(item)
        return node

    def _primary(self) -> Predicate:
        token = self._next()
        if token == "(":
            node = self._or()
            self._next(")")
            return node
        if token == "contains":
            self._next("(")
            name = self.names[self._next()]
            self._next(",")
            value = self.values[self._next()]
            self._next(")")
            return lambda item: _contains(item.get(name), value)

        name = self.names[token]
        op = self._next()
        if op == "BETWEEN":
            low = self.values[self._next()]
            self._next("AND")
            high = self.values[self._next()]
            return lambda item: name in item and low <= item[name] <= high
        compare = _COMPARISONS[op]
        value = self.values[self._next()]
        return lambda item: name in item and compare(item[name], value)


def _compile_filter(params: Dict[str, Any]) -> Predicate:
    expression = params.get("FilterExpression")
    if not expression:
        return lambda item: True
    return _FilterParser(
        expression,
        params.get("ExpressionAttributeNames", {}),
        params.get("ExpressionAttributeValues", {}),
    ).parse()


class FakeDynamoClient:
    def __init__(self, items: Optional[List[Dict[str, Any]]] = None):
        self.items: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        for item in items or []:
            self.items[item["blogId"]] = copy.deepcopy(item)

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _typed(item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: _SER.serialize(v) for k, v in item.items() if v is not None}

    @staticmethod
    def _key_of(item: Dict[str, Any], index: bool) -> Dict[str, Any]:
        key = {"blogId": {"S": item["blogId"]}}
        if index:
            key["userId"] = {"S": item["userId"]}
            key["createdAt"] = {"S": item["createdAt"]}
        return key

    def _page(self, rows: List[Dict[str, Any]], params: Dict[str, Any], index: bool) -> Dict[str, Any]:
        start = params.get("ExclusiveStartKey")
        if start:
            start_id = start["blogId"]["S"]
            ids = [r["blogId"] for r in rows]
            rows = rows[ids.index(start_id) + 1:] if start_id in ids else []
        limit = params.get("Limit") or len(rows) or 1
        page = rows[:limit]
        matches = _compile_filter(params)
        kept = [r for r in page if matches(r)]
        resp: Dict[str, Any] = {
            "Items": [self._typed(r) for r in kept],
            "Count": len(kept),
            "ScannedCount": len(page),
        }
        if page and len(page) == limit:
            resp["LastEvaluatedKey"] = self._key_of(page[-1], index)
        return resp

    # -- client API ----------------------------------------------------------

    def query(self, **params: Any) -> Dict[str, Any]:
        self.calls.append(("query", params))
        match = _KEY_CONDITION_RE.search(params["KeyConditionExpression"])
        attr = params["ExpressionAttributeNames"][match.group(1)]
        value = _DESER.deserialize(params["ExpressionAttributeValues"][match.group(2)])
        rows = [r for r in self.items.values() if r.get(attr) == value]
        rows.sort(key=lambda r: r["createdAt"], reverse=not params.get("ScanIndexForward", True))
        return self._page(rows, params, index=True)

    def scan(self, **params: Any) -> Dict[str, Any]:
        self.calls.append(("scan", params))
        rows = sorted(self.items.values(), key=lambda r: r["blogId"])
        return self._page(rows, params, index=False)

    def get_item(self, **params: Any) -> Dict[str, Any]:
        self.calls.append(("get_item", params))
        item = self.items.get(params["Key"]["blogId"]["S"])
        return {"Item": self._typed(item)} if item else {}

    def put_item(self, **params: Any) -> Dict[str, Any]:
        self.calls.append(("put_item", params))
        item = {k: _DESER.deserialize(v) for k, v in params["Item"].items()}
        self.items[item["blogId"]] = item
        return {}

    def delete_item(self, **params: Any) -> Dict[str, Any]:
        self.calls.append(("delete_item", params))
        self.items.pop(params["Key"]["blogId"]["S"], None)
        return {}

    def update_item(self, **params: Any) -> Dict[str, Any]:
        self.calls.append(("update_item", params))
        item = self.items.get(params["Key"]["blogId"]["S"])
        if item is None and "attribute_exists" in params.get("ConditionExpression", ""):
            raise ClientError(
                {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
                "UpdateItem",
            )
        item = item if item is not None else {"blogId": params["Key"]["blogId"]["S"]}
        names = params.get("ExpressionAttributeNames", {})
        values = params.get("ExpressionAttributeValues", {})
        for clause in params["UpdateExpression"][len("SET "):].split(", "):
            name, value = clause.split(" = ")
            item[names[name]] = _DESER.deserialize(values[value])
        self.items[item["blogId"]] = item
        return {"Attributes": self._typed(item)}
