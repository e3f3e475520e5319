import random
import threading
import time
from collections import defaultdict
from decimal import Decimal

import pytest

from common import SearchSettings
from dynamodb_store import BranchPage, ListingStore, item_to_hit
from index_catalog import default_catalog
from listing_keys import index_attributes


class InMemoryListingStore(ListingStore):
    """
    Price-ordered partitions per (index, composite key), paginated with offset tokens.

    Failures can be injected per partition key; `block` makes a partition wait on
    an event so timeout and cancellation paths can be exercised.
    """

    def __init__(self, listings=(), catalog=None, delay=0.0):
        self.catalog = catalog or default_catalog()
        self.partitions = defaultdict(list)
        self.delay = delay
        self.calls = []
        self.failures = {}
        self.blocked = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()
        for listing in listings:
            self.put(listing)

    def put(self, listing):
        item = {**listing, **index_attributes(listing, self.catalog)}
        for index in self.catalog.all_indexes():
            key = item[index.partition_attribute]
            part = self.partitions[(index.name, key)]
            part.append(item_to_hit(item))
            part.sort(key=lambda h: (h.price, h.listing_id))

    def fail(self, partition_key, exc, times=None):
        """Raise exc for the next `times` queries on partition_key (None = always)."""
        self.failures[partition_key] = [exc, times]

    def block(self, partition_key, event):
        self.blocked[partition_key] = event

    def query(self, index_name, partition_key, price_range, page_size, resume_token=None):
        with self._lock:
            self.calls.append((index_name, partition_key, resume_token))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            failure = self.failures.get(partition_key)
            if failure is not None and failure[1] is not None:
                failure[1] -= 1
                if failure[1] < 0:
                    failure = None
        try:
            if partition_key in self.blocked:
                self.blocked[partition_key].wait(5)
            if self.delay:
                time.sleep(self.delay)
            if failure is not None:
                raise failure[0]

            low, high = price_range if price_range is not None else (None, None)
            items = [
                h for h in self.partitions.get((index_name, partition_key), [])
                if (low is None or h.price >= low) and (high is None or h.price <= high)
            ]
            start = int(resume_token) if resume_token else 0
            end = start + page_size
            next_token = str(end) if end < len(items) else None
            return BranchPage(items=list(items[start:end]), next_token=next_token)
        finally:
            with self._lock:
                self.in_flight -= 1


class ScriptedListingStore(ListingStore):
    """
    Partitions returned in exactly the given storage order (no sorting), so
    tests can hand out price ties in any id order or one listing under two keys.
    """

    def __init__(self, partitions):
        self.partitions = {key: [item_to_hit(item) for item in items] for key, items in partitions.items()}
        self.calls = []

    def query(self, index_name, partition_key, price_range, page_size, resume_token=None):
        self.calls.append((index_name, partition_key, resume_token))
        items = self.partitions.get(partition_key, [])
        start = int(resume_token) if resume_token else 0
        end = start + page_size
        next_token = str(end) if end < len(items) else None
        return BranchPage(items=list(items[start:end]), next_token=next_token)


def scripted_item(listing_id, price, deal_type="CashDeal", property_type="Condo"):
    return {
        "listing_id": listing_id,
        "price": price,
        "city": "Austin",
        "deal_type": deal_type,
        "property_type": property_type,
        "bed_bucket": "bed2",
        "bath_bucket": "bath1",
    }


def make_listing(listing_id, city, deal_type, property_type, bedrooms, bathrooms, price):
    return {
        "listing_id": listing_id,
        "created_at": 1700000000,
        "city": city,
        "deal_type": deal_type,
        "property_type": property_type,
        "bedrooms": bedrooms,
        "bathrooms": bathrooms,
        "price": price,
        "images": [f"https://img.example.com/{listing_id}/1.jpg"],
        "owner_id": "owner-1",
    }


@pytest.fixture
def five_listings():
    return [
        make_listing("ny-1", "NewYork", "CashDeal", "Condo", 2, 1, 150000),
        make_listing("ny-2", "NewYork", "CashDeal", "SingleFamily", 3, 2, 350000),
        make_listing("ny-3", "NewYork", "CashDeal", "Condo", 1, 1, 450000),
        make_listing("ny-4", "NewYork", "SubTo", "Townhouse", 2, 2, 200000),
        make_listing("bos-1", "Boston", "CashDeal", "Condo", 2, 1, 100000),
    ]


@pytest.fixture
def austin_listings():
    """80 Austin listings with lots of price ties across every facet."""
    rng = random.Random(7)
    listings = []
    for i in range(80):
        listings.append(make_listing(
            f"atx-{i:03d}",
            "Austin",
            rng.choice(["CashDeal", "SubTo", "Wholesale"]),
            rng.choice(["Condo", "SingleFamily", "Townhouse"]),
            rng.randint(1, 5),
            rng.choice([1, 1.5, 2, 3]),
            rng.choice([90000, 125000, 125000, 180000, 210000, 210000, 260000, 300000]),
        ))
    return listings


@pytest.fixture
def fast_settings():
    return SearchSettings(
        max_branches=64,
        fallback_on_large_plan=False,
        concurrency=4,
        branch_timeout=2.0,
        max_retries=2,
        base_backoff=0.001,
        max_backoff=0.005,
        fatal_failure_fraction=0.5,
        default_page_size=20,
        max_page_size=100,
    )


def price_key(hit):
    return (hit.price, hit.listing_id)


def as_decimal(value):
    return Decimal(str(value))
