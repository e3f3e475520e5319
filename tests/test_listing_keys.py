import itertools
from decimal import Decimal

import pytest

from index_catalog import default_catalog
from listing_keys import (
    KEY_DELIMITER, bathroom_bucket, bedroom_bucket, bucket_for, build_key, index_attributes, split_key,
)
from search_errors import InvalidAttribute


@pytest.mark.parametrize("bedrooms,expected", [(1, "bed1"), (2, "bed2"), (3, "bed3plus"), (5, "bed3plus"), (12, "bed3plus")])
def test_bedroom_bucket(bedrooms, expected):
    assert bedroom_bucket(bedrooms) == expected
    # recomputing must give the same label (write path and query path agree)
    assert bedroom_bucket(bedrooms) == bedroom_bucket(bedrooms)


@pytest.mark.parametrize("bathrooms,expected", [(1, "bath1"), (1.5, "bath1"), (2, "bath2plus"), (2.5, "bath2plus"), (4, "bath2plus")])
def test_bathroom_bucket(bathrooms, expected):
    assert bathroom_bucket(bathrooms) == expected


@pytest.mark.parametrize("bad", [0, -1, 0.5, True, "2", None, 2.5, float("nan")])
def test_bedroom_bucket_rejects_invalid(bad):
    with pytest.raises(InvalidAttribute):
        bedroom_bucket(bad)


@pytest.mark.parametrize("bad", [0, -2, 0.5, False, "1"])
def test_bathroom_bucket_rejects_invalid(bad):
    with pytest.raises(InvalidAttribute):
        bathroom_bucket(bad)


def test_bucket_for_dispatches_by_facet():
    assert bucket_for("bed_bucket", 2) == "bed2"
    assert bucket_for("bath_bucket", 3) == "bath2plus"
    with pytest.raises(InvalidAttribute):
        bucket_for("deal_type", 2)


def test_build_key_joins_in_order():
    assert build_key(["NewYork", "CashDeal"]) == "NewYork#CashDeal"
    assert build_key(("NewYork",)) == "NewYork"
    assert split_key("Austin#SubTo#Condo#bed2#bath1") == ["Austin", "SubTo", "Condo", "bed2", "bath1"]


@pytest.mark.parametrize("values", [["New#York"], ["NewYork", ""], ["NewYork", "  "], [], ["NewYork", 3]])
def test_build_key_rejects_bad_values(values):
    with pytest.raises(InvalidAttribute):
        build_key(values)


def test_build_key_is_injective():
    alphabet = ["a", "b", "ab", "ba", "a b", "b-a"]
    tuples = set()
    for n in (1, 2, 3):
        tuples.update(itertools.product(alphabet, repeat=n))
    keys = {}
    for t in tuples:
        key = build_key(t)
        assert key not in keys, f"{t} collides with {keys.get(key)}"
        keys[key] = t
        assert tuple(split_key(key)) == t


def test_index_attributes_cover_every_index():
    listing = {
        "listing_id": "x1", "city": "Austin", "deal_type": "SubTo", "property_type": "Condo",
        "bedrooms": 4, "bathrooms": 1.5, "price": 250000,
    }
    attrs = index_attributes(listing)
    catalog = default_catalog()
    assert attrs["bed_bucket"] == "bed3plus"
    assert attrs["bath_bucket"] == "bath1"
    for index in catalog.all_indexes():
        assert index.partition_attribute in attrs
    assert attrs["city_deal_property_bed_bath"] == "Austin#SubTo#Condo#bed3plus#bath1"
    assert attrs["city_bed_bath"] == "Austin#bed3plus#bath1"
    assert attrs["city_deal_type"] == "Austin#SubTo"
    assert attrs["city_property_type"] == "Austin#Condo"
    assert attrs["city"] == "Austin"


def test_index_attributes_rejects_missing_or_reserved_values():
    with pytest.raises(InvalidAttribute):
        index_attributes({"city": "Austin", "deal_type": "SubTo", "property_type": "Condo", "bedrooms": 2})
    with pytest.raises(InvalidAttribute):
        index_attributes({"city": "Austin", "deal_type": f"Sub{KEY_DELIMITER}To", "property_type": "Condo",
                          "bedrooms": 2, "bathrooms": 1})


def test_stored_decimal_counts_bucket_like_raw_counts():
    # items read back from DynamoDB carry Decimal room counts
    assert bedroom_bucket(Decimal("2")) == bedroom_bucket(2) == "bed2"
    assert bathroom_bucket(Decimal("1.5")) == bathroom_bucket(1.5) == "bath1"
    assert bathroom_bucket(Decimal("2.5")) == "bath2plus"
    for bad in (Decimal("1.5"), Decimal("0"), Decimal("NaN"), Decimal("Infinity")):
        with pytest.raises(InvalidAttribute):
            bedroom_bucket(bad)
