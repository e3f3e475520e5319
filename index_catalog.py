"""
index_catalog.py - Registry of listing GSIs and index selection

Each Global Secondary Index on the listings table partitions by one composite
attribute (built by listing_keys.build_key) and sorts by price. The catalog is
built once at startup and passed explicitly to the planner; nothing mutates it.

Index selection rule:
- Candidate = index whose partition facets are a subset of the facets the filter constrains
- Pick the candidate covering the most facets (least residual filtering)
- Ties go to catalog order: five-facet, three-facet, two-facet, then city-only
- City-only means scanning a whole city partition: returned with degraded=True
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Tuple

from listing_keys import (
    FACET_BATH_BUCKET, FACET_BED_BUCKET, FACET_CITY, FACET_DEAL_TYPE, FACET_PROPERTY_TYPE,
)
from search_errors import NoIndexAvailable, UnknownIndex

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

PRICE_ATTRIBUTE = "price"


@dataclass(frozen=True)
class IndexDescriptor:
    """One GSI: name, ordered partition facets, and the attribute holding its key."""
    name: str
    facets: Tuple[str, ...]
    partition_attribute: str
    sort_attribute: str = PRICE_ATTRIBUTE
    full_partition: bool = False  # city-only: no facet narrowing below the city

    @property
    def facet_set(self) -> FrozenSet[str]:
        return frozenset(self.facets)


# Preference order matters: it is the tie-break for equally sized candidates
DEFAULT_INDEXES = (
    IndexDescriptor(
        name="city-deal-property-bed-bath-index",
        facets=(FACET_CITY, FACET_DEAL_TYPE, FACET_PROPERTY_TYPE, FACET_BED_BUCKET, FACET_BATH_BUCKET),
        partition_attribute="city_deal_property_bed_bath",
    ),
    IndexDescriptor(
        name="city-bedBucket-bathBucket-index",
        facets=(FACET_CITY, FACET_BED_BUCKET, FACET_BATH_BUCKET),
        partition_attribute="city_bed_bath",
    ),
    IndexDescriptor(
        name="city-dealType-index",
        facets=(FACET_CITY, FACET_DEAL_TYPE),
        partition_attribute="city_deal_type",
    ),
    IndexDescriptor(
        name="city-propertyType-index",
        facets=(FACET_CITY, FACET_PROPERTY_TYPE),
        partition_attribute="city_property_type",
    ),
    IndexDescriptor(
        name="city-index",
        facets=(FACET_CITY,),
        partition_attribute="city",
        full_partition=True,
    ),
)


class IndexCatalog:
    """Read-only registry of IndexDescriptors, in preference order."""

    def __init__(self, descriptors: Iterable[IndexDescriptor]):
        ordered = tuple(descriptors)
        by_name: Dict[str, IndexDescriptor] = {}
        for d in ordered:
            if d.name in by_name:
                raise UnknownIndex(f"Index {d.name!r} registered twice")
            if not d.facets or d.facets[0] != FACET_CITY:
                raise UnknownIndex(f"Index {d.name!r} must partition by city first")
            by_name[d.name] = d
        self._ordered = ordered
        self._by_name = by_name

    def describe(self, index_name: str) -> IndexDescriptor:
        try:
            return self._by_name[index_name]
        except KeyError:
            raise UnknownIndex(f"Unknown index {index_name!r}") from None

    def all_indexes(self) -> Tuple[IndexDescriptor, ...]:
        return self._ordered

    def __len__(self):
        return len(self._ordered)


_DEFAULT_CATALOG = None


def default_catalog() -> IndexCatalog:
    """The catalog matching the GSIs provisioned on LISTINGS_TABLE (built once)."""
    global _DEFAULT_CATALOG
    if _DEFAULT_CATALOG is None:
        _DEFAULT_CATALOG = IndexCatalog(DEFAULT_INDEXES)
    return _DEFAULT_CATALOG


# ===============================================
# INDEX SELECTION
# ===============================================

@dataclass(frozen=True)
class IndexSelection:
    index: IndexDescriptor
    residual_facets: FrozenSet[str]  # constrained by the filter but not by the partition key
    degraded: bool                   # True when only the city-only index applies


def rank_indexes(catalog: IndexCatalog, present_facets: Iterable[str]) -> List[IndexSelection]:
    """
    Rank every usable index for a set of constrained facets, best first.

    Args:
        catalog: Index catalog
        present_facets: Facets with a non-empty accepted-value set (must include city)

    Returns:
        IndexSelections ordered by coverage (desc), then catalog preference

    Raises:
        NoIndexAvailable: city is not among the present facets
    """
    present = frozenset(present_facets)
    if FACET_CITY not in present:
        raise NoIndexAvailable("Filter must constrain city; no index can serve it")

    ranked = []
    for position, index in enumerate(catalog.all_indexes()):
        if index.facet_set <= present:
            ranked.append((-len(index.facet_set), position, index))
    ranked.sort(key=lambda r: (r[0], r[1]))

    if not ranked:
        raise NoIndexAvailable(f"No index partitions on a subset of {sorted(present)}")

    return [
        IndexSelection(
            index=index,
            residual_facets=present - index.facet_set,
            degraded=index.full_partition,
        )
        for _, _, index in ranked
    ]


def select_index(catalog: IndexCatalog, present_facets: Iterable[str]) -> IndexSelection:
    """Pick the narrowest index whose partition facets the filter fully constrains."""
    selection = rank_indexes(catalog, present_facets)[0]
    logger.info(
        "Selected index %s (residual=%s%s)",
        selection.index.name,
        sorted(selection.residual_facets),
        ", degraded full-partition scan" if selection.degraded else "",
    )
    return selection
