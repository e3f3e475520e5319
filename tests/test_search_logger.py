import json
import logging
from decimal import Decimal

import search_logger
from conftest import InMemoryListingStore
from index_catalog import default_catalog
from listing_search import ListingSearchService, SearchResult
from query_planner import FilterRequest, build_plan, validate_request
from search_errors import BranchFailure


class FakeDynamoDB:
    def __init__(self, error=None):
        self.items = []
        self.error = error

    def put_item(self, TableName, Item):
        if self.error:
            raise self.error
        self.items.append((TableName, Item))


def _plan_and_result(request):
    accepted, price_range, _ = validate_request(request)
    plan = build_plan(default_catalog(), accepted, price_range, 64)
    result = SearchResult(items=[], cursor="abc", warnings=[{"component": "fanout", "message": "1/2 branches failed"}],
                          index_name=plan.index.name, branch_count=len(plan.branches), query_id="q-1")
    return plan, result


def test_python_to_dynamodb():
    assert search_logger._python_to_dynamodb(None) == {"NULL": True}
    assert search_logger._python_to_dynamodb(True) == {"BOOL": True}
    assert search_logger._python_to_dynamodb(Decimal("1.5")) == {"N": "1.5"}
    assert search_logger._python_to_dynamodb(("a", 2)) == {"L": [{"S": "a"}, {"N": "2"}]}
    assert search_logger._python_to_dynamodb({"k": ["x"]}) == {"M": {"k": {"L": [{"S": "x"}]}}}


def test_filter_hash_ignores_value_order():
    a = search_logger.describe_filter(FilterRequest(city="Austin", deal_types=["SubTo", "CashDeal"]))
    b = search_logger.describe_filter(FilterRequest(city="Austin", deal_types=("CashDeal", "SubTo"), page_size=3))
    assert search_logger.hash_filter(a) == search_logger.hash_filter(b)
    assert a["deal_types"] == ["CashDeal", "SubTo"]


def test_log_entry_contents(caplog):
    request = FilterRequest(city="Austin", deal_types=["SubTo", "CashDeal"], page_size=5, cursor="prev")
    plan, result = _plan_and_result(request)
    failure = BranchFailure(1, "Austin#SubTo", "throttled", attempts=4)

    with caplog.at_level(logging.INFO, logger="search_logger"):
        entry = search_logger.log_search_query(
            "q-1", request, plan, result, {"fetched": 3}, [failure], {"plan_ms": 0.4}, 12.5, persist=False,
        )

    assert entry["index"] == "city-dealType-index"
    assert entry["branch_count"] == 2
    assert entry["resumed"] is True
    assert entry["has_more"] is True
    assert entry["failed_branches"] == [{"partition_key": "Austin#SubTo", "reason": "throttled", "attempts": 4}]
    assert entry["logged_at_edt"].endswith(("EDT", "EST"))
    json.dumps(entry, cls=search_logger.DecimalEncoder)
    assert any(r.getMessage() == "SEARCH_COMPLETE" and r.query_id == "q-1" for r in caplog.records)


def test_persisted_entry_written_to_dynamodb():
    fake = FakeDynamoDB()
    search_logger._write_to_dynamodb({"query_id": "q-1", "total_time_ms": 3.5, "degraded": False}, client=fake)
    table, item = fake.items[0]
    assert table == search_logger.SEARCH_LOGS_TABLE
    assert item == {"query_id": {"S": "q-1"}, "total_time_ms": {"N": "3.5"}, "degraded": {"BOOL": False}}


def test_persist_failure_does_not_fail_search(monkeypatch, caplog):
    fake = FakeDynamoDB(error=RuntimeError("table missing"))
    monkeypatch.setattr(search_logger, "_dynamodb", fake)
    request = FilterRequest(city="Austin", deal_types=["SubTo"])
    plan, result = _plan_and_result(request)

    with caplog.at_level(logging.ERROR, logger="search_logger"):
        entry = search_logger.log_search_query("q-2", request, plan, result, {}, [], {}, 1.0, persist=True)

    assert entry["query_id"] == "q-2"
    assert "table missing" in caplog.text


def test_search_logs_each_query(caplog, five_listings, fast_settings):
    service = ListingSearchService(InMemoryListingStore(five_listings), settings=fast_settings)
    with caplog.at_level(logging.INFO, logger="search_logger"):
        result = service.search(FilterRequest(city="NewYork", deal_types=["CashDeal"]))
    records = [r for r in caplog.records if r.getMessage() == "SEARCH_COMPLETE"]
    assert len(records) == 1
    assert records[0].query_id == result.query_id
    assert records[0].result_count == 3
