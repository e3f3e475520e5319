"""
query_planner.py - FilterRequest validation and fan-out planning

Turns a faceted filter into the concrete set of partition-key queries to run:

1. validate_request(): reject malformed filters before any storage I/O
2. index_catalog.select_index(): choose the GSI that covers the most constrained facets
3. plan_fanout(): expand multi-valued facets into their cross-product, one
   composite key (= one branch query) per combination

Example:
    city=Austin, deal_type={CashDeal, SubTo}, property_type={Condo}
    -> city-deal-property-bed-bath-index is not usable (beds/baths unconstrained)
    -> city-dealType-index, 2 branches: "Austin#CashDeal", "Austin#SubTo"
    -> property_type=Condo becomes a residual predicate applied after fetch
"""

import hashlib
import itertools
import json
import logging
import math
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, NamedTuple, Optional, Tuple

from index_catalog import IndexCatalog, IndexDescriptor, rank_indexes, select_index
from listing_keys import (
    BUCKETED_FACETS, FACET_BATH_BUCKET, FACET_BED_BUCKET, FACET_CITY, FACET_DEAL_TYPE,
    FACET_PROPERTY_TYPE, KEY_DELIMITER, build_key, bucket_for,
)
from search_errors import InvalidAttribute, InvalidRequest, PlannerError, PlanTooLarge

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))


class PriceRange(NamedTuple):
    low: Optional[Decimal]   # inclusive, None = unbounded
    high: Optional[Decimal]  # inclusive, None = unbounded

    def to_json(self):
        return [None if p is None else str(p) for p in self]


@dataclass
class FilterRequest:
    """
    One incoming search. city is required; every other facet is an optional set
    of accepted values (empty = don't filter on it).

    bed_buckets / bath_buckets accept bucket labels ("bed2", "bath2plus") or raw
    counts (2, 3) which are bucketed with listing_keys.
    """
    city: str
    deal_types: Iterable[str] = ()
    property_types: Iterable[str] = ()
    bed_buckets: Iterable[Any] = ()
    bath_buckets: Iterable[Any] = ()
    price_min: Optional[Any] = None
    price_max: Optional[Any] = None
    page_size: Optional[int] = None
    cursor: Optional[str] = None


@dataclass(frozen=True)
class BranchQuery:
    branch_id: int
    index_name: str
    partition_key: str
    price_range: PriceRange
    facet_values: Tuple[str, ...]


@dataclass
class FanOutPlan:
    index: IndexDescriptor
    branches: Tuple[BranchQuery, ...]
    residual: Dict[str, FrozenSet[str]]
    price_range: PriceRange
    degraded: bool = False
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def signature(self) -> str:
        """Stable fingerprint; a cursor is only valid for a plan with the same signature."""
        body = {
            "index": self.index.name,
            "keys": [b.partition_key for b in self.branches],
            "price": self.price_range.to_json(),
            "residual": {facet: sorted(values) for facet, values in sorted(self.residual.items())},
        }
        raw = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]

    def matches_residual(self, facets: Mapping[str, Any]) -> bool:
        """Apply the facets the partition key does not cover to a fetched item."""
        for facet, accepted in self.residual.items():
            if facets.get(facet) not in accepted:
                return False
        return True


# ===============================================
# VALIDATION
# ===============================================

_REQUEST_FACETS = (
    (FACET_DEAL_TYPE, "deal_types"),
    (FACET_PROPERTY_TYPE, "property_types"),
    (FACET_BED_BUCKET, "bed_buckets"),
    (FACET_BATH_BUCKET, "bath_buckets"),
)


def _price(value, name: str) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise InvalidRequest(f"{name} must be a number, got {value!r}")
    price = Decimal(str(value))
    if not price.is_finite():
        raise InvalidRequest(f"{name} must be finite")
    if price < 0:
        raise InvalidRequest(f"{name} must be >= 0, got {value}")
    return price


def _text_values(facet: str, raw) -> Tuple[str, ...]:
    values = set()
    for v in raw:
        if not isinstance(v, str) or not v.strip():
            raise InvalidRequest(f"{facet} values must be non-empty strings, got {v!r}")
        if KEY_DELIMITER in v:
            raise InvalidRequest(f"{facet} value {v!r} contains reserved {KEY_DELIMITER!r}")
        values.add(v)
    return tuple(sorted(values))


def _bucket_values(facet: str, raw) -> Tuple[str, ...]:
    allowed = BUCKETED_FACETS[facet]
    values = set()
    for v in raw:
        if isinstance(v, str):
            if v not in allowed:
                raise InvalidRequest(f"{facet} must be one of {list(allowed)}, got {v!r}")
            values.add(v)
        else:
            try:
                values.add(bucket_for(facet, v))
            except InvalidAttribute as e:
                raise InvalidRequest(str(e)) from e
    # keep enumeration order so keys come out bed1, bed2, bed3plus
    return tuple(b for b in allowed if b in values)


def validate_request(request: FilterRequest, max_page_size: int = 100,
                     default_page_size: int = 20) -> Tuple[Dict[str, Tuple[str, ...]], PriceRange, int]:
    """
    Validate a FilterRequest and normalize its accepted-value sets.

    Args:
        request: Incoming filter
        max_page_size: Upper bound for page_size
        default_page_size: Used when page_size is None

    Returns:
        (constrained facets -> sorted accepted values, price range, page size)

    Raises:
        InvalidRequest: on any malformed field (nothing has touched storage yet)
    """
    city = request.city
    if not isinstance(city, str) or not city.strip():
        raise InvalidRequest("city is required")
    if KEY_DELIMITER in city:
        raise InvalidRequest(f"city {city!r} contains reserved {KEY_DELIMITER!r}")

    accepted: Dict[str, Tuple[str, ...]] = {FACET_CITY: (city,)}
    for facet, attr in _REQUEST_FACETS:
        raw = getattr(request, attr)
        if raw is None:
            raw = ()
        elif isinstance(raw, (str, int, float)):
            raw = (raw,)  # single value passed without a container
        if facet in BUCKETED_FACETS:
            values = _bucket_values(facet, raw)
        else:
            values = _text_values(facet, raw)
        if values:
            accepted[facet] = values

    low = _price(request.price_min, "price_min")
    high = _price(request.price_max, "price_max")
    if low is not None and high is not None and low > high:
        raise InvalidRequest(f"price_min ({low}) must be <= price_max ({high})")

    page_size = default_page_size if request.page_size is None else request.page_size
    if isinstance(page_size, bool) or not isinstance(page_size, int) or not 1 <= page_size <= max_page_size:
        raise InvalidRequest(f"page_size must be an integer in 1..{max_page_size}, got {page_size!r}")

    if request.cursor is not None and not isinstance(request.cursor, str):
        raise InvalidRequest("cursor must be the opaque string returned by a previous search")

    return accepted, PriceRange(low, high), page_size


# ===============================================
# FAN-OUT PLANNING
# ===============================================

def plan_fanout(index: IndexDescriptor, accepted: Mapping[str, Tuple[str, ...]],
                price_range: PriceRange, max_branches: int) -> FanOutPlan:
    """
    Expand the accepted-value sets of the index's facets into branch queries.

    Args:
        index: Selected index descriptor
        accepted: Normalized accepted values per constrained facet (from validate_request)
        price_range: Inclusive price bounds pushed down to every branch
        max_branches: Cap on the cross-product size

    Returns:
        FanOutPlan with one BranchQuery per combination, in deterministic order

    Raises:
        PlannerError: index partitions on a facet the filter leaves unconstrained
        PlanTooLarge: cross-product exceeds max_branches
    """
    value_sets = []
    for facet in index.facets:
        values = accepted.get(facet)
        if not values:
            raise PlannerError(f"Index {index.name} partitions on {facet!r} but the filter does not constrain it")
        value_sets.append(values)

    # size check before enumerating anything
    branch_count = math.prod(len(v) for v in value_sets)
    if branch_count > max_branches:
        raise PlanTooLarge(index.name, branch_count, max_branches)

    branches = []
    for branch_id, combo in enumerate(itertools.product(*value_sets)):
        branches.append(BranchQuery(
            branch_id=branch_id,
            index_name=index.name,
            partition_key=build_key(combo),
            price_range=price_range,
            facet_values=tuple(combo),
        ))

    residual = {
        facet: frozenset(values)
        for facet, values in accepted.items()
        if facet not in index.facet_set
    }
    return FanOutPlan(
        index=index,
        branches=tuple(branches),
        residual=residual,
        price_range=price_range,
        degraded=index.full_partition,
    )


def build_plan(catalog: IndexCatalog, accepted: Mapping[str, Tuple[str, ...]], price_range: PriceRange,
               max_branches: int, fallback_on_large_plan: bool = False) -> FanOutPlan:
    """
    Select an index and plan the fan-out for an already validated filter.

    With fallback_on_large_plan, a PlanTooLarge on the best index moves on to the
    next ranked index (fewer partition facets, more residual filtering) and
    records a warning on the plan.
    """
    if fallback_on_large_plan:
        candidates = rank_indexes(catalog, accepted.keys())
    else:
        candidates = [select_index(catalog, accepted.keys())]
    too_large = None
    for selection in candidates:
        try:
            plan = plan_fanout(selection.index, accepted, price_range, max_branches)
        except PlanTooLarge as e:
            if not fallback_on_large_plan:
                raise
            logger.warning("%s - trying a coarser index", e)
            too_large = too_large or e
            continue

        if too_large is not None:
            plan.warnings.append({
                "component": "index_selection",
                "message": (f"{too_large.index_name} would need {too_large.branch_count} branches; "
                            f"fell back to {plan.index.name} with residual filtering"),
                "impact": "medium",
            })
        if plan.degraded:
            plan.warnings.append({
                "component": "index_selection",
                "message": f"Only {plan.index.name} matches this filter; scanning the full city partition",
                "impact": "high",
            })
        logger.info("Fan-out plan: index=%s branches=%d residual=%s",
                    plan.index.name, len(plan.branches), sorted(plan.residual))
        return plan

    # every candidate was too large (city-only is always 1 branch, so only
    # reachable with max_branches < 1)
    raise too_large
