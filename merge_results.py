"""
merge_results.py - K-way price merge over fan-out branches, with resumable cursors

Each branch returns listings in ascending price order. The aggregator:
1. Buffers every branch page sorted by (price, listing_id)
2. Pops the global minimum from a heap, but only while every live branch has
   buffered data; a drained branch with more pages must be refilled first,
   otherwise its next page could hold cheaper listings than what we'd emit
3. Drops listings already emitted (dedup by listing_id, seeded from the cursor) and
   listings failing the residual predicate
4. Stops at page_size and records, per branch, where to resume

Storage only orders by price, so listings tied on price can come back in any
order and split across storage pages. A branch is not merged from until its
buffer reaches past the price at its head (or the branch is exhausted); the
whole tie group is then sorted by listing_id before anything at that price
is emitted.

Cursor per branch:
- token: storage token of the oldest page still holding buffered listings (or
  of the next page if the buffer is drained); None with exhausted=False means "from the start"
- last_price + ids: the consumption anchor. On resume the page is re-read and
  everything priced below last_price, or at last_price with an id already
  consumed, is skipped. This is what keeps ties that straddle pages from
  being skipped or repeated.

The cursor also carries a page-level emission anchor (last emitted price and
the ids emitted at that price) so a listing served by two branches is not
emitted again when the page boundary falls between its two copies.

The cursor carries the plan signature; presenting it with a filter that plans
differently raises StaleCursor.
"""

import base64
import binascii
import heapq
import json
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Deque, Dict, List, Optional, Tuple

from dynamodb_store import BranchPage, ListingHit
from fanout_executor import BranchRequest
from query_planner import BranchQuery, FanOutPlan
from search_errors import StaleCursor

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

CURSOR_VERSION = 2


# ===============================================
# PAGINATION CURSOR
# ===============================================

@dataclass
class BranchCursor:
    token: Optional[str] = None
    exhausted: bool = False
    last_price: Optional[Decimal] = None
    consumed_ids: Tuple[str, ...] = ()  # ids consumed at exactly last_price

    def is_consumed(self, hit: ListingHit) -> bool:
        if self.last_price is None:
            return False
        if hit.price < self.last_price:
            return True
        return hit.price == self.last_price and hit.listing_id in self.consumed_ids

    def consume(self, hit: ListingHit):
        if self.last_price is not None and hit.price == self.last_price:
            if hit.listing_id not in self.consumed_ids:
                self.consumed_ids = self.consumed_ids + (hit.listing_id,)
        else:
            self.last_price = hit.price
            self.consumed_ids = (hit.listing_id,)


@dataclass
class PaginationCursor:
    signature: str
    branches: Dict[int, BranchCursor] = field(default_factory=dict)
    last_price: Optional[Decimal] = None  # price of the last emitted listing
    emitted_ids: Tuple[str, ...] = ()     # ids emitted at exactly last_price

    def encode(self) -> str:
        body = {
            "v": CURSOR_VERSION,
            "sig": self.signature,
            "lp": None if self.last_price is None else str(self.last_price),
            "e": list(self.emitted_ids),
            "b": {
                str(bid): {
                    "t": bc.token,
                    "x": bc.exhausted,
                    "p": None if bc.last_price is None else str(bc.last_price),
                    "ids": list(bc.consumed_ids),
                }
                for bid, bc in sorted(self.branches.items())
            },
        }
        raw = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, raw: str) -> "PaginationCursor":
        """Parse an encoded cursor; anything malformed is treated as stale."""
        try:
            body = json.loads(base64.urlsafe_b64decode(raw.encode("ascii")).decode("utf-8"))
            if body.get("v") != CURSOR_VERSION:
                raise StaleCursor(f"Unsupported cursor version {body.get('v')!r}")
            branches = {}
            for bid, b in body["b"].items():
                token = b["t"]
                if token is not None and not isinstance(token, str):
                    raise ValueError("token must be a string")
                branches[int(bid)] = BranchCursor(
                    token=token,
                    exhausted=bool(b["x"]),
                    last_price=None if b["p"] is None else Decimal(b["p"]),
                    consumed_ids=tuple(str(i) for i in b["ids"]),
                )
            return cls(
                signature=str(body["sig"]),
                branches=branches,
                last_price=None if body["lp"] is None else Decimal(body["lp"]),
                emitted_ids=tuple(str(i) for i in body["e"]),
            )
        except StaleCursor:
            raise
        except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError,
                AttributeError, InvalidOperation) as e:
            raise StaleCursor(f"Malformed cursor: {e}") from e

    def check(self, plan: FanOutPlan):
        """Reject a cursor produced by a different fan-out plan."""
        if self.signature != plan.signature:
            raise StaleCursor("Cursor was issued for a different filter; restart the search without a cursor")
        if set(self.branches) != {b.branch_id for b in plan.branches}:
            raise StaleCursor("Cursor branch set does not match the current plan")


# ===============================================
# MERGE
# ===============================================

@dataclass
class _BranchState:
    query: BranchQuery
    cursor: BranchCursor
    buffer: Deque[ListingHit] = field(default_factory=deque)
    page_token: Optional[str] = None  # token of the oldest page still in the buffer
    failed: bool = False

    @property
    def starved(self) -> bool:
        """Live branch that must be fetched before merging on: empty buffer, or a
        buffer holding a single price whose tie group may continue on the next page."""
        if self.failed or self.cursor.exhausted:
            return False
        if not self.buffer:
            return True
        return self.buffer[-1].price == self.buffer[0].price


class MergeSortAggregator:
    """Merges price-ordered branch pages into one deduplicated, paginated page."""

    def __init__(self, plan: FanOutPlan, page_size: int, cursor: Optional[PaginationCursor] = None):
        self.plan = plan
        self.page_size = page_size
        self._states: Dict[int, _BranchState] = {}
        for branch in plan.branches:
            resumed = cursor.branches[branch.branch_id] if cursor else None
            bc = BranchCursor(
                token=resumed.token,
                exhausted=resumed.exhausted,
                last_price=resumed.last_price,
                consumed_ids=resumed.consumed_ids,
            ) if resumed else BranchCursor()
            self._states[branch.branch_id] = _BranchState(query=branch, cursor=bc)
        self._heap: List[Tuple[Decimal, str, int]] = []
        # emission anchor carried across pages
        self._last_price = cursor.last_price if cursor else None
        self._emitted_ids: Tuple[str, ...] = cursor.emitted_ids if cursor else ()
        self._seen_ids = set(self._emitted_ids)
        self.items: List[ListingHit] = []
        self.stats = {"fetched": 0, "duplicates": 0, "residual_filtered": 0, "resume_skipped": 0}

    # -- fetch bookkeeping -------------------------------------------------

    def pending_requests(self) -> List[BranchRequest]:
        """Branch queries needed before the merge can advance."""
        if self.full:
            return []
        return [
            BranchRequest(query=st.query, token=st.cursor.token, page_size=self.page_size)
            for st in self._states.values()
            if st.starved
        ]

    def add_page(self, branch_id: int, page: BranchPage):
        st = self._states[branch_id]
        if not st.buffer:
            st.page_token = st.cursor.token
        st.cursor.token = page.next_token
        st.cursor.exhausted = page.next_token is None
        self.stats["fetched"] += len(page.items)

        fresh = []
        for hit in page.items:
            if st.cursor.is_consumed(hit):
                self.stats["resume_skipped"] += 1
                continue
            fresh.append(hit)
        if not fresh:
            return
        # ties from this page may sort ahead of what is already buffered
        st.buffer = deque(sorted([*st.buffer, *fresh], key=lambda h: (h.price, h.listing_id)))
        self._reset_head(st)

    def mark_failed(self, branch_id: int):
        self._states[branch_id].failed = True

    def _push_head(self, st: _BranchState):
        head = st.buffer[0]
        heapq.heappush(self._heap, (head.price, head.listing_id, st.query.branch_id))

    def _reset_head(self, st: _BranchState):
        bid = st.query.branch_id
        if any(entry[2] == bid for entry in self._heap):
            self._heap = [entry for entry in self._heap if entry[2] != bid]
            heapq.heapify(self._heap)
        self._push_head(st)

    # -- merge --------------------------------------------------------------

    @property
    def full(self) -> bool:
        return len(self.items) >= self.page_size

    @property
    def done(self) -> bool:
        """Page is full, or nothing left to merge and nothing left to fetch."""
        if self.full:
            return True
        return not self._heap and not any(st.starved for st in self._states.values())

    def _emit(self, hit: ListingHit):
        if self._last_price is not None and hit.price == self._last_price:
            self._emitted_ids = self._emitted_ids + (hit.listing_id,)
        else:
            self._last_price = hit.price
            self._emitted_ids = (hit.listing_id,)
        self._seen_ids.add(hit.listing_id)
        self.items.append(hit)

    def merge(self) -> int:
        """
        Emit listings until the page is full or a branch needs a refill.

        Returns:
            Number of listings emitted by this call
        """
        emitted = 0
        while self._heap and not self.full:
            if any(st.starved for st in self._states.values()):
                break
            price, listing_id, branch_id = heapq.heappop(self._heap)
            st = self._states[branch_id]
            hit = st.buffer.popleft()
            st.cursor.consume(hit)
            if st.buffer:
                self._push_head(st)

            if hit.listing_id in self._seen_ids:
                self.stats["duplicates"] += 1
                continue
            if not self.plan.matches_residual(hit.facets):
                self.stats["residual_filtered"] += 1
                continue
            self._emit(hit)
            emitted += 1
        return emitted

    def cursor(self) -> Optional[PaginationCursor]:
        """
        Resume state for the next page, or None when every branch is exhausted
        and fully consumed.
        """
        branches = {}
        finished = True
        for bid, st in self._states.items():
            bc = st.cursor
            if st.buffer:
                # Re-read from the oldest page that still holds unconsumed listings
                token, exhausted = st.page_token, False
            else:
                token, exhausted = bc.token, bc.exhausted
            if not exhausted:
                finished = False
            branches[bid] = BranchCursor(
                token=token,
                exhausted=exhausted,
                last_price=bc.last_price,
                consumed_ids=bc.consumed_ids,
            )
        if finished:
            return None
        return PaginationCursor(
            signature=self.plan.signature,
            branches=branches,
            last_price=self._last_price,
            emitted_ids=self._emitted_ids,
        )
