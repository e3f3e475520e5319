import json

import search_cli
from conftest import InMemoryListingStore


def test_explain_prints_plan(capsys):
    code = search_cli.main([
        "--city", "Austin", "--deal-type", "CashDeal", "--deal-type", "SubTo",
        "--property-type", "Condo", "--explain",
    ])
    out = capsys.readouterr().out
    assert code == 0
    assert "Index: city-dealType-index (city, deal_type)" in out
    assert "Branches: 2" in out
    assert "Austin#CashDeal" in out and "Austin#SubTo" in out
    assert "property_type in ['Condo']" in out


def test_beds_accept_counts_and_labels():
    args = search_cli.build_parser().parse_args(["--city", "Austin", "--beds", "2", "--beds", "bed3plus"])
    request = search_cli.request_from_args(args)
    assert request.bed_buckets == [2, "bed3plus"]


def test_invalid_filter_exits_with_error(capsys):
    code = search_cli.main(["--city", "Austin", "--price-min", "500", "--price-max", "100", "--explain"])
    assert code == 2
    assert "InvalidRequest" in capsys.readouterr().err


def test_json_output(monkeypatch, capsys, five_listings):
    monkeypatch.setattr(search_cli, "DynamoDBListingStore", lambda: InMemoryListingStore(five_listings))
    code = search_cli.main(["--city", "NewYork", "--deal-type", "CashDeal", "--price-max", "400000", "--json"])
    body = json.loads(capsys.readouterr().out)
    assert code == 0
    assert [r["listing_id"] for r in body["results"]] == ["ny-1", "ny-2"]
    assert body["results"][0]["price"] == 150000
    assert body["cursor"] is None
