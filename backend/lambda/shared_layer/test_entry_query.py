"""test_entry_query.py — Listing/search query construction and paging.

Run from the repository root:
    python3 -m pytest backend/lambda/shared_layer/test_entry_query.py -v
"""

from __future__ import annotations

import os
import sys
import unittest
from unittest.mock import MagicMock

from botocore.exceptions import ClientError

_HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.join(_HERE, "python"))
sys.path.insert(0, _HERE)

from fake_dynamodb import FakeDynamoClient, entry
from journal_shared.config import JournalConfig
from journal_shared.cursor import STRATEGY_SCAN, PageCursor, decode_cursor, encode_cursor
from journal_shared.entry_query import (
    DateRange,
    EntryQuery,
    EntryQueryService,
    MoodEquals,
    OwnerOrPublic,
    TagContains,
    TextContains,
    VisibilityEquals,
    build_list_plan,
    build_search_plan,
    clamp_page_size,
    conjunction,
    parse_list_params,
    parse_search_params,
)
from journal_shared.errors import InvalidCursorError, InvalidQueryError

CONFIG = JournalConfig(blogs_table="blogs", owner_index="userIdIndex")


def _values(plan):
    """Plain values bound into a plan's expressions."""
    return {k: v.get("S") for k, v in plan.params.get("ExpressionAttributeValues", {}).items()}


class ParamParsingTests(unittest.TestCase):
    def test_defaults(self):
        query = parse_list_params("u1", None, CONFIG)
        self.assertEqual(query.caller_id, "u1")
        self.assertEqual(query.page_size, 10)
        self.assertEqual(query.scope, "all")
        self.assertIsNone(query.cursor)
        self.assertEqual(query.predicates, ())

    def test_page_size_clamps_and_defaults(self):
        self.assertEqual(clamp_page_size("25", CONFIG), 25)
        self.assertEqual(clamp_page_size("500", CONFIG), 100)
        self.assertEqual(clamp_page_size("abc", CONFIG), 10)
        self.assertEqual(clamp_page_size("0", CONFIG), 10)
        self.assertEqual(clamp_page_size("-3", CONFIG), 10)
        self.assertEqual(clamp_page_size(None, CONFIG), 10)

    def test_empty_filters_are_absent(self):
        query = parse_list_params("u1", {"tag": "", "mood": "   ", "q": "", "startDate": "", "endDate": ""}, CONFIG)
        self.assertEqual(query.predicates, ())

    def test_filters_become_predicates(self):
        query = parse_list_params(
            "u1",
            {"tag": "a", "mood": "Happy", "startDate": "2024-01-01", "endDate": "2024-01-31", "q": "park"},
            CONFIG,
        )
        self.assertEqual(
            query.predicates,
            (
                TagContains("a"),
                MoodEquals("Happy"),
                DateRange("2024-01-01T00:00:00Z", "2024-01-31T23:59:59Z"),
                TextContains("park"),
            ),
        )

    def test_unknown_scope_rejected(self):
        with self.assertRaises(InvalidQueryError):
            parse_list_params("u1", {"visibility": "friends"}, CONFIG)

    def test_scope_is_case_insensitive(self):
        self.assertEqual(parse_list_params("u1", {"visibility": "PUBLIC"}, CONFIG).scope, "public")

    def test_inverted_date_range_rejected(self):
        with self.assertRaises(InvalidQueryError):
            parse_list_params("u1", {"startDate": "2024-02-01", "endDate": "2024-01-01"}, CONFIG)

    def test_same_day_range_is_valid(self):
        query = parse_list_params(
            "u1", {"startDate": "2024-01-31T08:00:00Z", "endDate": "2024-01-31"}, CONFIG
        )
        self.assertEqual(query.predicates, (DateRange("2024-01-31T08:00:00Z", "2024-01-31T23:59:59Z"),))

    def test_unparsable_date_rejected(self):
        with self.assertRaises(InvalidQueryError):
            parse_list_params("u1", {"startDate": "last week"}, CONFIG)

    def test_single_date_bound(self):
        query = parse_list_params("u1", {"startDate": "2024-01-01"}, CONFIG)
        self.assertEqual(query.predicates, (DateRange(start="2024-01-01T00:00:00Z"),))

    def test_offset_bounds_normalized_to_stored_form(self):
        query = parse_list_params(
            "u1", {"startDate": "2024-01-02T00:00:00+05:00", "endDate": "2024-01-01T20:00:00Z"}, CONFIG
        )
        self.assertEqual(query.predicates, (DateRange("2024-01-01T19:00:00Z", "2024-01-01T20:00:00Z"),))
        plan = build_list_plan(query, CONFIG)
        low, high = _values(plan)[":v1"], _values(plan)[":v2"]
        self.assertLessEqual(low, high)

    def test_offset_start_keeps_earlier_utc_entries(self):
        query = parse_list_params("u1", {"startDate": "2024-01-01T00:00:00+05:00"}, CONFIG)
        (bound,) = query.predicates
        self.assertEqual(bound.start, "2023-12-31T19:00:00Z")
        self.assertLessEqual(bound.start, "2023-12-31T20:00:00Z")

    def test_malformed_token_rejected(self):
        with self.assertRaises(InvalidCursorError):
            parse_list_params("u1", {"nextToken": "garbage"}, CONFIG)

    def test_missing_caller_rejected(self):
        with self.assertRaises(InvalidQueryError):
            parse_list_params("", {}, CONFIG)

    def test_search_requires_term(self):
        with self.assertRaises(InvalidQueryError) as ctx:
            parse_search_params("u1", {"q": "  "}, CONFIG)
        self.assertEqual(str(ctx.exception), "Search term is required")

    def test_search_predicates(self):
        query = parse_search_params("u1", {"q": "park", "tag": "walks"}, CONFIG)
        self.assertEqual(query.predicates, (TextContains("park"), OwnerOrPublic("u1"), TagContains("walks")))


class PlanTests(unittest.TestCase):
    def test_all_scope_queries_owner_index_newest_first(self):
        plan = build_list_plan(parse_list_params("u1", {"limit": "5"}, CONFIG), CONFIG)
        self.assertEqual(plan.operation, "query")
        self.assertEqual(plan.params["TableName"], "blogs")
        self.assertEqual(plan.params["IndexName"], "userIdIndex")
        self.assertIs(plan.params["ScanIndexForward"], False)
        self.assertEqual(plan.params["Limit"], 6)
        self.assertEqual(plan.params["KeyConditionExpression"], "#n0 = :v0")
        self.assertEqual(plan.params["ExpressionAttributeNames"], {"#n0": "userId"})
        self.assertEqual(_values(plan), {":v0": "u1"})
        self.assertNotIn("FilterExpression", plan.params)
        self.assertNotIn("ExclusiveStartKey", plan.params)

    def test_private_scope_adds_visibility_filter(self):
        plan = build_list_plan(parse_list_params("u1", {"visibility": "private"}, CONFIG), CONFIG)
        self.assertEqual(plan.operation, "query")
        self.assertEqual(plan.params["FilterExpression"], "#n1 = :v1")
        self.assertEqual(plan.params["ExpressionAttributeNames"]["#n1"], "visibility")
        self.assertEqual(_values(plan)[":v1"], "private")

    def test_shared_scope_lists_own_shared_entries(self):
        plan = build_list_plan(parse_list_params("u1", {"visibility": "shared"}, CONFIG), CONFIG)
        self.assertEqual(plan.operation, "query")
        self.assertEqual(_values(plan), {":v0": "u1", ":v1": "shared"})

    def test_public_scope_scans_table(self):
        plan = build_list_plan(parse_list_params("u1", {"visibility": "public"}, CONFIG), CONFIG)
        self.assertEqual(plan.operation, "scan")
        self.assertNotIn("IndexName", plan.params)
        self.assertNotIn("KeyConditionExpression", plan.params)
        self.assertNotIn("ScanIndexForward", plan.params)
        self.assertEqual(plan.params["FilterExpression"], "#n0 = :v0")
        self.assertEqual(_values(plan), {":v0": "public"})

    def test_tag_and_mood_form_one_conjunction(self):
        plan = build_list_plan(parse_list_params("u1", {"tag": "a", "mood": "Happy"}, CONFIG), CONFIG)
        self.assertEqual(plan.params["FilterExpression"], "(contains(#n1, :v1) AND #n2 = :v2)")
        self.assertEqual(
            plan.params["ExpressionAttributeNames"],
            {"#n0": "userId", "#n1": "tags", "#n2": "mood"},
        )
        self.assertEqual(_values(plan), {":v0": "u1", ":v1": "a", ":v2": "Happy"})

    def test_conjunction_structure(self):
        condition = conjunction([TagContains("a"), MoodEquals("Happy"), VisibilityEquals("private")])
        expression = condition.get_expression()
        self.assertEqual(expression["operator"], "AND")
        self.assertIsNone(conjunction([]))

    def test_date_range_filter(self):
        plan = build_list_plan(
            parse_list_params("u1", {"startDate": "2024-01-01", "endDate": "2024-01-31"}, CONFIG), CONFIG
        )
        self.assertIn("BETWEEN", plan.params["FilterExpression"])
        self.assertEqual(set(_values(plan).values()), {"u1", "2024-01-01T00:00:00Z", "2024-01-31T23:59:59Z"})

    def test_user_text_never_reaches_expression_string(self):
        hostile = "x) OR (visibility = :v0"
        plan = build_list_plan(parse_list_params("u1", {"q": hostile, "tag": hostile}, CONFIG), CONFIG)
        self.assertNotIn(hostile, plan.params["FilterExpression"])
        self.assertIn(hostile, _values(plan).values())

    def test_cursor_becomes_exclusive_start_key(self):
        token = encode_cursor(PageCursor("owner", "b-2", "u1", "2024-02-01T00:00:00Z"))
        plan = build_list_plan(parse_list_params("u1", {"nextToken": token}, CONFIG), CONFIG)
        self.assertEqual(
            plan.params["ExclusiveStartKey"],
            {"blogId": {"S": "b-2"}, "userId": {"S": "u1"}, "createdAt": {"S": "2024-02-01T00:00:00Z"}},
        )

    def test_cursor_from_other_owner_rejected(self):
        token = encode_cursor(PageCursor("owner", "b-2", "u1", "2024-02-01T00:00:00Z"))
        with self.assertRaises(InvalidCursorError):
            build_list_plan(parse_list_params("u2", {"nextToken": token}, CONFIG), CONFIG)

    def test_cursor_from_other_strategy_rejected(self):
        token = encode_cursor(PageCursor(STRATEGY_SCAN, "b-2"))
        with self.assertRaises(InvalidCursorError):
            build_list_plan(parse_list_params("u1", {"nextToken": token}, CONFIG), CONFIG)
        plan = build_list_plan(parse_list_params("u1", {"nextToken": token, "visibility": "public"}, CONFIG), CONFIG)
        self.assertEqual(plan.params["ExclusiveStartKey"], {"blogId": {"S": "b-2"}})

    def test_search_plan_scans_own_or_public(self):
        plan = build_search_plan(parse_search_params("u1", {"q": "park"}, CONFIG), CONFIG)
        self.assertEqual(plan.operation, "scan")
        names = set(plan.params["ExpressionAttributeNames"].values())
        self.assertEqual(names, {"title", "content", "tags", "userId", "visibility"})
        self.assertEqual(set(_values(plan).values()), {"park", "u1", "public"})
        self.assertTrue(plan.params["FilterExpression"].startswith("("))


class PagingTests(unittest.TestCase):
    def _service(self, items):
        ddb = FakeDynamoClient(items)
        return EntryQueryService(CONFIG, ddb), ddb

    def _page(self, service, caller, **params):
        return service.list_page(parse_list_params(caller, params, CONFIG))

    def test_two_entry_scenario(self):
        service, ddb = self._service([
            entry("b-jan", "u1", "2024-01-01T00:00:00Z", tags=["welcome"]),
            entry("b-feb", "u1", "2024-02-01T00:00:00Z", tags=["update"]),
        ])

        first = self._page(service, "u1", visibility="all", limit="1")
        self.assertEqual([i["createdAt"] for i in first.items], ["2024-02-01T00:00:00Z"])
        self.assertTrue(first.next_token)

        second = self._page(service, "u1", visibility="all", limit="1", nextToken=first.next_token)
        self.assertEqual([i["createdAt"] for i in second.items], ["2024-01-01T00:00:00Z"])
        self.assertIsNone(second.next_token)
        self.assertNotIn("nextToken", second.to_payload())
        self.assertEqual(len(ddb.calls), 2)

    def test_pages_are_descending_without_gaps_or_repeats(self):
        items = [entry(f"b-{n}", "u1", f"2024-01-{n:02d}T12:00:00Z") for n in range(1, 8)]
        items.append(entry("b-other", "u2", "2024-01-15T00:00:00Z"))
        service, _ = self._service(items)

        seen = []
        token = None
        pages = 0
        while True:
            params = {"limit": "3"}
            if token:
                params["nextToken"] = token
            page = self._page(service, "u1", **params)
            self.assertLessEqual(page.count, 3)
            seen.extend(i["createdAt"] for i in page.items)
            pages += 1
            token = page.next_token
            if not token:
                break

        self.assertEqual(pages, 3)
        self.assertEqual(seen, sorted(seen, reverse=True))
        self.assertEqual(len(seen), len(set(seen)))
        self.assertEqual(len(seen), 7)

    def test_exactly_full_last_page_has_no_token(self):
        items = [entry(f"b-{n}", "u1", f"2024-03-0{n}T00:00:00Z") for n in range(1, 5)]
        service, _ = self._service(items)
        first = self._page(service, "u1", limit="2")
        second = self._page(service, "u1", limit="2", nextToken=first.next_token)
        self.assertEqual(first.count, 2)
        self.assertEqual(second.count, 2)
        self.assertIsNone(second.next_token)
        self.assertFalse({i["blogId"] for i in first.items} & {i["blogId"] for i in second.items})

    def test_tag_and_mood_return_only_entries_matching_both(self):
        service, _ = self._service([
            entry("e1", "u1", "2024-01-03T00:00:00Z", tags=["a"], mood="Happy"),
            entry("e2", "u1", "2024-01-02T00:00:00Z", tags=["a"], mood="Sad"),
            entry("e3", "u1", "2024-01-01T00:00:00Z", tags=["b"], mood="Happy"),
        ])
        page = self._page(service, "u1", tag="a", mood="Happy")
        self.assertEqual([i["blogId"] for i in page.items], ["e1"])
        self.assertIsNone(page.next_token)

    def test_filtered_pages_may_be_short_until_token_runs_out(self):
        items = [entry(f"b-{n}", "u1", f"2024-05-0{n}T00:00:00Z", mood="Sad") for n in range(2, 6)]
        items.append(entry("b-1", "u1", "2024-05-01T00:00:00Z", mood="Happy"))
        service, _ = self._service(items)

        found, token, pages = [], None, 0
        while True:
            params = {"limit": "1", "mood": "Happy"}
            if token:
                params["nextToken"] = token
            page = self._page(service, "u1", **params)
            found.extend(i["blogId"] for i in page.items)
            pages += 1
            token = page.next_token
            if not token:
                break
        self.assertEqual(found, ["b-1"])
        self.assertGreater(pages, 1)

    def test_date_range_with_offset_returns_entries_in_utc_window(self):
        service, _ = self._service([
            entry("late", "u1", "2023-12-31T20:00:00Z"),
            entry("early", "u1", "2023-12-31T18:00:00Z"),
        ])
        page = self._page(service, "u1", startDate="2024-01-01T00:00:00+05:00")
        self.assertEqual([i["blogId"] for i in page.items], ["late"])

    def test_store_token_passed_through_when_page_is_short(self):
        ddb = MagicMock()
        ddb.query.return_value = {
            "Items": [],
            "LastEvaluatedKey": {"blogId": {"S": "b-9"}, "userId": {"S": "u1"}, "createdAt": {"S": "2024-01-09T00:00:00Z"}},
        }
        service = EntryQueryService(CONFIG, ddb)
        page = service.list_page(parse_list_params("u1", {"mood": "Sad"}, CONFIG))
        self.assertEqual(page.items, [])
        self.assertEqual(decode_cursor(page.next_token), PageCursor("owner", "b-9", "u1", "2024-01-09T00:00:00Z"))

    def test_public_scan_page_sorted_newest_first(self):
        service, ddb = self._service([
            entry("a", "u2", "2024-01-01T00:00:00Z", visibility="public"),
            entry("b", "u3", "2024-03-01T00:00:00Z", visibility="public"),
            entry("c", "u4", "2024-02-01T00:00:00Z", visibility="public"),
        ])
        page = self._page(service, "u1", visibility="public", limit="2")
        self.assertEqual([i["blogId"] for i in page.items], ["b", "a"])
        self.assertEqual(ddb.calls[0][0], "scan")
        # Resume position follows store order, not display order.
        self.assertEqual(decode_cursor(page.next_token), PageCursor(STRATEGY_SCAN, "b"))
        rest = self._page(service, "u1", visibility="public", limit="2", nextToken=page.next_token)
        self.assertEqual([i["blogId"] for i in rest.items], ["c"])
        self.assertIsNone(rest.next_token)

    def test_search_page_uses_scan(self):
        service, ddb = self._service([entry("a", "u1", "2024-01-01T00:00:00Z", title="park walk")])
        page = service.search_page(parse_search_params("u1", {"q": "park"}, CONFIG))
        self.assertEqual(page.count, 1)
        self.assertEqual(ddb.calls[0][0], "scan")

    def test_store_errors_propagate_without_retry(self):
        ddb = MagicMock()
        ddb.query.side_effect = ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}}, "Query"
        )
        service = EntryQueryService(CONFIG, ddb)
        with self.assertRaises(ClientError):
            service.list_page(parse_list_params("u1", {}, CONFIG))
        ddb.query.assert_called_once()

    def test_collect_follows_tokens(self):
        items = [entry(f"b-{n}", "u1", f"2024-04-{n:02d}T00:00:00Z") for n in range(1, 6)]
        service, ddb = self._service(items)
        collected = service.collect(EntryQuery(caller_id="u1", page_size=2))
        self.assertEqual(len(collected), 5)
        self.assertEqual(collected[0]["blogId"], "b-5")
        self.assertEqual(len(ddb.calls), 3)

    def test_payload_shape(self):
        service, _ = self._service([entry("b-1", "u1", "2024-01-01T00:00:00Z")])
        payload = self._page(service, "u1").to_payload()
        self.assertEqual(payload["count"], 1)
        self.assertTrue(payload["success"])
        self.assertEqual(payload["items"][0]["blogId"], "b-1")


if __name__ == "__main__":
    unittest.main()
