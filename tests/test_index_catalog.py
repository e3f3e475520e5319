import itertools

import pytest

from index_catalog import DEFAULT_INDEXES, IndexCatalog, IndexDescriptor, default_catalog, rank_indexes, select_index
from listing_keys import FACETS
from search_errors import NoIndexAvailable, UnknownIndex


def test_describe_and_all_indexes():
    catalog = default_catalog()
    assert len(catalog) == 5
    assert catalog.describe("city-dealType-index").facets == ("city", "deal_type")
    assert [d.name for d in catalog.all_indexes()] == [d.name for d in DEFAULT_INDEXES]
    assert default_catalog() is catalog


def test_describe_unknown_index():
    with pytest.raises(UnknownIndex):
        default_catalog().describe("price-index")


def test_catalog_rejects_misconfiguration():
    dup = IndexDescriptor(name="city-index", facets=("city",), partition_attribute="city")
    with pytest.raises(UnknownIndex):
        IndexCatalog([dup, dup])
    with pytest.raises(UnknownIndex):
        IndexCatalog([IndexDescriptor(name="deal-index", facets=("deal_type",), partition_attribute="deal_type")])


def test_all_facets_select_five_facet_index():
    selection = select_index(default_catalog(), ["city", "deal_type", "property_type", "bed_bucket", "bath_bucket"])
    assert selection.index.name == "city-deal-property-bed-bath-index"
    assert selection.residual_facets == frozenset()
    assert not selection.degraded


def test_beds_and_baths_select_three_facet_index():
    selection = select_index(default_catalog(), ["city", "bed_bucket", "bath_bucket", "deal_type"])
    assert selection.index.name == "city-bedBucket-bathBucket-index"
    assert selection.residual_facets == {"deal_type"}


def test_two_facet_tie_prefers_deal_type():
    selection = select_index(default_catalog(), ["city", "deal_type", "property_type"])
    assert selection.index.name == "city-dealType-index"
    assert selection.residual_facets == {"property_type"}


def test_city_only_is_degraded():
    selection = select_index(default_catalog(), ["city", "bed_bucket"])
    assert selection.index.name == "city-index"
    assert selection.degraded
    assert selection.residual_facets == {"bed_bucket"}


def test_missing_city_has_no_index():
    with pytest.raises(NoIndexAvailable):
        select_index(default_catalog(), ["deal_type", "property_type"])


def test_selected_index_is_always_a_subset_of_the_filter():
    catalog = default_catalog()
    others = [f for f in FACETS if f != "city"]
    for n in range(len(others) + 1):
        for combo in itertools.combinations(others, n):
            present = {"city", *combo}
            ranked = rank_indexes(catalog, present)
            for selection in ranked:
                assert selection.index.facet_set <= present
                assert selection.residual_facets == present - selection.index.facet_set
            sizes = [len(s.index.facets) for s in ranked]
            assert sizes == sorted(sizes, reverse=True)
            assert ranked[-1].index.name == "city-index"
