"""
fanout_executor.py - Concurrent execution of fan-out branch queries

Runs one storage query per branch on a bounded thread pool:
- At most max_concurrency queries in flight
- Transient errors (throttling, 5xx, timeouts) retry with exponential backoff + jitter
- Non-transient errors fail the branch immediately
- A branch running longer than branch_timeout is marked failed; its late result is dropped
- Failures are isolated per branch: run() returns an outcome for every branch and
  leaves the tolerate/escalate decision to the caller
- cancel_event (threading.Event) is observed by every branch; setting it stops
  queued branches, interrupts backoff sleeps and raises SearchCancelled

A storage call already in flight cannot be interrupted. On timeout or
cancellation run() returns without joining its worker; the thread ends when
store.query returns, which the boto3 client bounds with read_timeout and
retries (common.DYNAMODB_CONFIG). The abandon event keeps such a thread from
starting another attempt.
"""

import concurrent.futures
import logging
import os
import random
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from dynamodb_store import BranchPage, ListingStore, is_transient_error
from query_planner import BranchQuery
from search_errors import BranchFailure, SearchCancelled

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))


@dataclass(frozen=True)
class BranchRequest:
    query: BranchQuery
    token: Optional[str]  # storage resume token, None = first page
    page_size: int


@dataclass
class BranchOutcome:
    request: BranchRequest
    page: Optional[BranchPage] = None
    failure: Optional[BranchFailure] = None
    error: Optional[Exception] = None  # underlying exception behind failure
    attempts: int = 0
    elapsed_ms: float = 0.0

    @property
    def branch_id(self) -> int:
        return self.request.query.branch_id

    @property
    def ok(self) -> bool:
        return self.failure is None


class FanOutExecutor:
    """Bounded, retrying, cancellable executor for branch queries."""

    def __init__(self, store: ListingStore, max_concurrency: int = 8, branch_timeout: float = 10.0,
                 max_retries: int = 3, base_backoff: float = 0.2, max_backoff: float = 4.0,
                 poll_interval: float = 0.05):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.store = store
        self.max_concurrency = max_concurrency
        self.branch_timeout = branch_timeout
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.poll_interval = poll_interval
        self.stragglers = 0  # worker threads left running by the last run()

    def _backoff(self, attempt: int) -> float:
        # 0.2s, 0.4s, 0.8s ... capped, plus jitter
        return min(self.base_backoff * (2 ** (attempt - 1)), self.max_backoff) + random.uniform(0, self.base_backoff)

    def _run_branch(self, req: BranchRequest, cancel_event: threading.Event, abandon: threading.Event,
                    started: Dict[int, float], lock: threading.Lock) -> BranchOutcome:
        """Query one branch, retrying transient errors within the branch deadline."""
        q = req.query
        t0 = time.monotonic()
        with lock:
            started[q.branch_id] = t0
        deadline = t0 + self.branch_timeout
        attempts = 0

        def failed(reason: str, error: Exception = None) -> BranchOutcome:
            return BranchOutcome(
                request=req,
                failure=BranchFailure(q.branch_id, q.partition_key, reason, attempts),
                error=error,
                attempts=attempts,
                elapsed_ms=(time.monotonic() - t0) * 1000,
            )

        while True:
            if cancel_event.is_set():
                raise SearchCancelled(f"Search cancelled before branch {q.branch_id} completed")
            if abandon.is_set():
                return failed("abandoned")

            attempts += 1
            try:
                page = self.store.query(q.index_name, q.partition_key, q.price_range, req.page_size, req.token)
                return BranchOutcome(
                    request=req,
                    page=page,
                    attempts=attempts,
                    elapsed_ms=(time.monotonic() - t0) * 1000,
                )
            except SearchCancelled:
                raise
            except Exception as e:
                if not is_transient_error(e):
                    logger.warning("Branch %d (%s) failed: %s", q.branch_id, q.partition_key, e)
                    return failed(str(e), e)
                if attempts > self.max_retries:
                    logger.warning("Branch %d (%s) exhausted %d retries: %s",
                                   q.branch_id, q.partition_key, self.max_retries, e)
                    return failed(f"retries exhausted: {e}", e)

                wait_time = self._backoff(attempts)
                if time.monotonic() + wait_time > deadline:
                    logger.warning("Branch %d (%s) out of time for another retry: %s", q.branch_id, q.partition_key, e)
                    return failed(f"timed out retrying: {e}", e)

                logger.debug(f"Branch {q.branch_id} throttled, retrying in {wait_time:.2f}s "
                             f"(attempt {attempts}/{self.max_retries + 1})")
                # Event.wait doubles as an interruptible sleep
                if cancel_event.wait(wait_time):
                    raise SearchCancelled(f"Search cancelled while branch {q.branch_id} was backing off")

    def run(self, requests: Iterable[BranchRequest],
            cancel_event: Optional[threading.Event] = None) -> Dict[int, BranchOutcome]:
        """
        Execute branch requests concurrently.

        Args:
            requests: One BranchRequest per branch to fetch
            cancel_event: Optional shared cancellation signal

        Returns:
            {branch_id: BranchOutcome} for every request (success or recorded failure)

        Raises:
            SearchCancelled: cancel_event was set before all branches finished
        """
        requests = list(requests)
        if not requests:
            return {}
        if cancel_event is None:
            cancel_event = threading.Event()
        if cancel_event.is_set():
            raise SearchCancelled("Search cancelled before fan-out started")

        abandon = threading.Event()
        started: Dict[int, float] = {}
        lock = threading.Lock()
        outcomes: Dict[int, BranchOutcome] = {}

        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.max_concurrency, len(requests)),
            thread_name_prefix="fanout",
        )
        future_to_req: Dict[concurrent.futures.Future, BranchRequest] = {}
        try:
            future_to_req = {
                pool.submit(self._run_branch, req, cancel_event, abandon, started, lock): req
                for req in requests
            }
            pending = set(future_to_req)

            while pending:
                if cancel_event.is_set():
                    raise SearchCancelled(f"Search cancelled with {len(pending)} branches in flight")

                done, pending = concurrent.futures.wait(
                    pending, timeout=self.poll_interval, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in done:
                    outcome = future.result()  # SearchCancelled propagates from here
                    outcomes[outcome.branch_id] = outcome

                # Branch timeout counts from when the branch started, not from submission
                now = time.monotonic()
                for future in list(pending):
                    req = future_to_req[future]
                    with lock:
                        t0 = started.get(req.query.branch_id)
                    if t0 is None or now - t0 <= self.branch_timeout:
                        continue
                    pending.discard(future)
                    future.cancel()
                    logger.warning("Branch %d (%s) timed out after %.1fs",
                                   req.query.branch_id, req.query.partition_key, self.branch_timeout)
                    outcomes[req.query.branch_id] = BranchOutcome(
                        request=req,
                        failure=BranchFailure(req.query.branch_id, req.query.partition_key,
                                              f"timed out after {self.branch_timeout}s"),
                        elapsed_ms=(now - t0) * 1000,
                    )
        finally:
            # Stop any straggler between attempts and release queued work without blocking
            abandon.set()
            pool.shutdown(wait=False, cancel_futures=True)
            self.stragglers = sum(1 for f in future_to_req if f.running())
            if self.stragglers:
                logger.warning("%d branch queries still running after fan-out returned; "
                               "they end when the storage client times out", self.stragglers)

        return outcomes
