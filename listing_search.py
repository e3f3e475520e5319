"""
listing_search.py - Faceted listing search over composite-key GSIs

Entry point: ListingSearchService.search(FilterRequest) -> SearchResult

Search Pipeline:
1. Validate the FilterRequest (InvalidRequest before any storage I/O)
2. Select the index covering the most constrained facets
3. Expand multi-valued facets into one branch query per composite key
4. Check the incoming cursor against the plan signature (StaleCursor)
5. Fetch all starved branches concurrently, merge by price, refill, repeat
   until the page is full or every branch is drained
6. Tolerate isolated branch failures (warning listing the missing branches),
   escalate to FanOutFailure when more than FATAL_FAILURE_FRACTION fail
7. Return listings, next cursor and warnings; log the search

Example:
    service = ListingSearchService(DynamoDBListingStore())
    page = service.search(FilterRequest(city="NewYork", deal_types={"CashDeal"},
                                        price_min=20000, price_max=400000))
    more = service.search(FilterRequest(city="NewYork", deal_types={"CashDeal"},
                                        price_min=20000, price_max=400000,
                                        cursor=page.cursor))
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from common import SearchSettings
from dynamodb_store import ListingHit, ListingStore
from fanout_executor import FanOutExecutor
from index_catalog import IndexCatalog, default_catalog
from merge_results import MergeSortAggregator, PaginationCursor
from query_planner import FanOutPlan, FilterRequest, build_plan, validate_request
from search_errors import BranchFailure, FanOutFailure, StaleCursor
from search_logger import generate_query_id, log_search_query

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))


@dataclass
class SearchResult:
    items: List[ListingHit]
    cursor: Optional[str]
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    index_name: str = ""
    branch_count: int = 0
    query_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "query_id": self.query_id,
            "results": [
                {"listing_id": h.listing_id, "price": h.price, **h.facets}
                for h in self.items
            ],
            "total": len(self.items),
            "cursor": self.cursor,
            "warnings": self.warnings,
            "index": self.index_name,
            "branches": self.branch_count,
        }


class ListingSearchService:
    """Plans, executes and merges faceted searches. Safe to share across threads."""

    def __init__(self, store: ListingStore, catalog: IndexCatalog = None,
                 settings: SearchSettings = None, executor: FanOutExecutor = None):
        self.catalog = catalog or default_catalog()
        self.settings = settings or SearchSettings.from_env()
        self.executor = executor or FanOutExecutor(
            store,
            max_concurrency=self.settings.concurrency,
            branch_timeout=self.settings.branch_timeout,
            max_retries=self.settings.max_retries,
            base_backoff=self.settings.base_backoff,
            max_backoff=self.settings.max_backoff,
        )

    def plan(self, request: FilterRequest) -> FanOutPlan:
        """Validate and plan without touching storage (used by --explain)."""
        accepted, price_range, _ = validate_request(
            request, self.settings.max_page_size, self.settings.default_page_size
        )
        return build_plan(self.catalog, accepted, price_range,
                          self.settings.max_branches, self.settings.fallback_on_large_plan)

    def _check_failures(self, failures: Dict[int, BranchFailure], total: int):
        if failures and len(failures) > self.settings.fatal_failure_fraction * total:
            logger.error("Fan-out failed: %d/%d branches failed", len(failures), total)
            raise FanOutFailure(list(failures.values()), total)

    def search(self, request: FilterRequest, cancel_event: Optional[threading.Event] = None) -> SearchResult:
        """
        Run one faceted search page.

        Args:
            request: FilterRequest (cursor=None for the first page)
            cancel_event: Optional event; setting it cancels all in-flight branches

        Returns:
            SearchResult with price-ordered listings, next cursor (None when done) and warnings

        Raises:
            InvalidRequest, NoIndexAvailable, PlanTooLarge, StaleCursor: before any partial result
            FanOutFailure: too many branches failed
            SearchCancelled: cancel_event was set
        """
        start_time = time.time()
        query_id = generate_query_id()
        timing_data = {}

        accepted, price_range, page_size = validate_request(
            request, self.settings.max_page_size, self.settings.default_page_size
        )
        plan = build_plan(self.catalog, accepted, price_range,
                          self.settings.max_branches, self.settings.fallback_on_large_plan)
        timing_data["plan_ms"] = (time.time() - start_time) * 1000

        cursor = None
        if request.cursor:
            cursor = PaginationCursor.decode(request.cursor)
            cursor.check(plan)

        logger.info("Search %s: city=%s index=%s branches=%d page_size=%d resumed=%s",
                    query_id, request.city, plan.index.name, len(plan.branches), page_size, cursor is not None)

        aggregator = MergeSortAggregator(plan, page_size, cursor)
        failures: Dict[int, BranchFailure] = {}
        rounds = 0
        fetch_start = time.time()

        while True:
            aggregator.merge()
            if aggregator.done:
                break
            requests = aggregator.pending_requests()
            if not requests:
                break

            rounds += 1
            outcomes = self.executor.run(requests, cancel_event)
            for branch_id, outcome in outcomes.items():
                if isinstance(outcome.error, StaleCursor):
                    raise outcome.error
                if outcome.ok:
                    aggregator.add_page(branch_id, outcome.page)
                else:
                    failures[branch_id] = outcome.failure
                    aggregator.mark_failed(branch_id)
            self._check_failures(failures, len(plan.branches))

        timing_data["fetch_merge_ms"] = (time.time() - fetch_start) * 1000
        timing_data["rounds"] = rounds

        warnings = list(plan.warnings)
        if failures:
            keys = [f.partition_key for f in failures.values()]
            warnings.append({
                "component": "fanout",
                "message": (f"{len(failures)}/{len(plan.branches)} branches failed; "
                            f"listings from these partitions may be missing from this page"),
                "impact": "high",
                "branches": keys,
            })
            logger.warning("Search %s returning partial results, failed branches: %s", query_id, keys)

        next_cursor = aggregator.cursor()
        result = SearchResult(
            items=aggregator.items,
            cursor=next_cursor.encode() if next_cursor else None,
            warnings=warnings,
            index_name=plan.index.name,
            branch_count=len(plan.branches),
            query_id=query_id,
        )

        total_time_ms = (time.time() - start_time) * 1000
        timing_data["total_ms"] = total_time_ms
        logger.info("Returning %d listings (more=%s) in %.1fms", len(result.items), bool(result.cursor), total_time_ms)

        log_search_query(
            query_id=query_id,
            request=request,
            plan=plan,
            result=result,
            merge_stats=aggregator.stats,
            failures=list(failures.values()),
            timing_data=timing_data,
            total_time_ms=total_time_ms,
        )
        return result
