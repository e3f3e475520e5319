"""
listing_keys.py - Facet buckets and composite keys shared by ingest and search

Both the write path (which persists index projection attributes on every listing)
and the query planner (which turns filter values into partition keys) MUST go
through this module. If the two sides ever compute a different bucket or key for
the same listing, that listing silently disappears from every index lookup.

Nothing here touches storage.

Buckets:
- Bedrooms: 1 -> bed1, 2 -> bed2, 3+ -> bed3plus
- Bathrooms: 1 -> bath1, 2+ -> bath2plus (half baths round down: 1.5 -> bath1)

Composite keys:
- Ordered facet values joined with "#", e.g. "NewYork#CashDeal"
- "#" is reserved and rejected inside any facet value, so the join is injective
"""

import math
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping

from search_errors import InvalidAttribute

KEY_DELIMITER = "#"

BED_ONE = "bed1"
BED_TWO = "bed2"
BED_THREE_PLUS = "bed3plus"
BEDROOM_BUCKETS = (BED_ONE, BED_TWO, BED_THREE_PLUS)

BATH_ONE = "bath1"
BATH_TWO_PLUS = "bath2plus"
BATHROOM_BUCKETS = (BATH_ONE, BATH_TWO_PLUS)

# Facet names used by filters, index descriptors and listing items
FACET_CITY = "city"
FACET_DEAL_TYPE = "deal_type"
FACET_PROPERTY_TYPE = "property_type"
FACET_BED_BUCKET = "bed_bucket"
FACET_BATH_BUCKET = "bath_bucket"

FACETS = (FACET_CITY, FACET_DEAL_TYPE, FACET_PROPERTY_TYPE, FACET_BED_BUCKET, FACET_BATH_BUCKET)
BUCKETED_FACETS = {
    FACET_BED_BUCKET: BEDROOM_BUCKETS,
    FACET_BATH_BUCKET: BATHROOM_BUCKETS,
}


# ===============================================
# BUCKETING
# ===============================================

def _count(value: Any, attribute: str, allow_fraction: bool = False):
    # bool is an int subclass; True bedrooms is never meaningful.
    # Decimal is what stored items deserialize to.
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise InvalidAttribute(f"{attribute} must be a number, got {value!r}")
    if isinstance(value, float):
        finite = math.isfinite(value)
        whole = finite and value.is_integer()
    elif isinstance(value, Decimal):
        finite = value.is_finite()
        whole = finite and value == value.to_integral_value()
    else:
        finite = whole = True
    if not finite:
        raise InvalidAttribute(f"{attribute} must be finite, got {value!r}")
    if not allow_fraction and not whole:
        raise InvalidAttribute(f"{attribute} must be a whole number, got {value!r}")
    if value < 1:
        raise InvalidAttribute(f"{attribute} must be >= 1, got {value!r}")
    return value


def bedroom_bucket(bedrooms) -> str:
    """Map a raw bedroom count (>= 1) to bed1 / bed2 / bed3plus."""
    n = _count(bedrooms, "bedrooms")
    if n == 1:
        return BED_ONE
    if n == 2:
        return BED_TWO
    return BED_THREE_PLUS


def bathroom_bucket(bathrooms) -> str:
    """Map a raw bathroom count (>= 1, half baths allowed) to bath1 / bath2plus."""
    n = _count(bathrooms, "bathrooms", allow_fraction=True)
    if math.floor(n) == 1:
        return BATH_ONE
    return BATH_TWO_PLUS


def bucket_for(facet: str, raw_value) -> str:
    """Bucket a raw count for a bucketed facet (bed_bucket / bath_bucket)."""
    if facet == FACET_BED_BUCKET:
        return bedroom_bucket(raw_value)
    if facet == FACET_BATH_BUCKET:
        return bathroom_bucket(raw_value)
    raise InvalidAttribute(f"Facet {facet!r} is not bucketed")


# ===============================================
# COMPOSITE KEYS
# ===============================================

def check_facet_value(value: Any, facet: str = "facet") -> str:
    """
    Validate a single facet value for use inside a composite key.

    Raises:
        InvalidAttribute: value is not a non-empty string or contains the delimiter
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidAttribute(f"{facet} value must be a non-empty string, got {value!r}")
    if KEY_DELIMITER in value:
        raise InvalidAttribute(f"{facet} value {value!r} contains reserved delimiter {KEY_DELIMITER!r}")
    return value


def build_key(values: Iterable[str]) -> str:
    """
    Join ordered facet values into a composite partition key.

    Args:
        values: Facet values in the order the index declares its facets

    Returns:
        Composite key string, e.g. "Austin#CashDeal#SingleFamily#bed2#bath1"

    Raises:
        InvalidAttribute: any value is empty or contains the delimiter
    """
    parts = [check_facet_value(v) for v in values]
    if not parts:
        raise InvalidAttribute("Composite key needs at least one facet value")
    return KEY_DELIMITER.join(parts)


def split_key(key: str) -> List[str]:
    """Inverse of build_key (diagnostics and --explain output)."""
    return key.split(KEY_DELIMITER)


# ===============================================
# WRITE-PATH PROJECTION
# ===============================================

def listing_facets(listing: Mapping[str, Any]) -> Dict[str, str]:
    """
    Derive the five facet values of a raw listing.

    Args:
        listing: Listing dict with city, deal_type, property_type, bedrooms, bathrooms

    Returns:
        {facet_name: facet_value} with bedrooms/bathrooms bucketed
    """
    try:
        return {
            FACET_CITY: check_facet_value(listing["city"], FACET_CITY),
            FACET_DEAL_TYPE: check_facet_value(listing["deal_type"], FACET_DEAL_TYPE),
            FACET_PROPERTY_TYPE: check_facet_value(listing["property_type"], FACET_PROPERTY_TYPE),
            FACET_BED_BUCKET: bedroom_bucket(listing["bedrooms"]),
            FACET_BATH_BUCKET: bathroom_bucket(listing["bathrooms"]),
        }
    except KeyError as e:
        raise InvalidAttribute(f"Listing is missing facet attribute {e.args[0]!r}") from e


def index_attributes(listing: Mapping[str, Any], catalog=None) -> Dict[str, str]:
    """
    Compute the projection attributes the ingest path stores with a listing.

    Every index in the catalog reads its partition key from one attribute; this
    returns those attributes plus the raw bucket labels so residual filters can
    be evaluated on fetched items.

    Args:
        listing: Raw listing dict (see listing_facets)
        catalog: IndexCatalog to project for (defaults to index_catalog.default_catalog())

    Returns:
        Dict of attribute name -> string value, ready to merge into the item
    """
    if catalog is None:
        from index_catalog import default_catalog
        catalog = default_catalog()

    facets = listing_facets(listing)
    attrs = {
        FACET_BED_BUCKET: facets[FACET_BED_BUCKET],
        FACET_BATH_BUCKET: facets[FACET_BATH_BUCKET],
    }
    for index in catalog.all_indexes():
        attrs[index.partition_attribute] = build_key(facets[f] for f in index.facets)
    return attrs
