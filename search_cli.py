#!/usr/bin/env python3
"""
Run a faceted listing search against the DynamoDB listing table.

Usage:
    python3 search_cli.py --city NewYork --deal-type CashDeal --price-min 20000 --price-max 400000
    python3 search_cli.py --city Austin --deal-type CashDeal --deal-type SubTo --beds 2 --beds 3 --baths 1 \
        --property-type Condo --explain
    python3 search_cli.py --city Austin --deal-type SubTo --cursor <cursor from previous page>
"""

import argparse
import json
import sys

from dynamodb_store import DynamoDBListingStore
from listing_search import ListingSearchService
from query_planner import FilterRequest
from search_errors import SearchError
from search_logger import DecimalEncoder


def _count_or_label(value: str):
    return int(value) if value.isdigit() else value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Faceted listing search over composite-key indexes")
    parser.add_argument("--city", required=True)
    parser.add_argument("--deal-type", action="append", default=[], dest="deal_types")
    parser.add_argument("--property-type", action="append", default=[], dest="property_types")
    parser.add_argument("--beds", action="append", default=[], type=_count_or_label,
                        help="bedroom count or bucket label (bed1, bed2, bed3plus); repeatable")
    parser.add_argument("--baths", action="append", default=[], type=_count_or_label,
                        help="bathroom count or bucket label (bath1, bath2plus); repeatable")
    parser.add_argument("--price-min", type=float)
    parser.add_argument("--price-max", type=float)
    parser.add_argument("--size", type=int, default=None)
    parser.add_argument("--cursor", default=None)
    parser.add_argument("--explain", action="store_true", help="print the fan-out plan without querying")
    parser.add_argument("--json", action="store_true", help="print the raw result as JSON")
    return parser


def request_from_args(args) -> FilterRequest:
    return FilterRequest(
        city=args.city,
        deal_types=args.deal_types,
        property_types=args.property_types,
        bed_buckets=args.beds,
        bath_buckets=args.baths,
        price_min=args.price_min,
        price_max=args.price_max,
        page_size=args.size,
        cursor=args.cursor,
    )


def explain(service: ListingSearchService, request: FilterRequest):
    plan = service.plan(request)
    print(f"Index: {plan.index.name} ({', '.join(plan.index.facets)})")
    print(f"Branches: {len(plan.branches)}")
    for b in plan.branches:
        print(f"  [{b.branch_id}] {b.partition_key}")
    if plan.residual:
        print("Residual filters:")
        for facet, values in sorted(plan.residual.items()):
            print(f"  {facet} in {sorted(values)}")
    for w in plan.warnings:
        print(f"⚠️  {w['message']}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    request = request_from_args(args)

    try:
        store = None if args.explain else DynamoDBListingStore()
        service = ListingSearchService(store)
        if args.explain:
            explain(service, request)
            return 0
        result = service.search(request)
    except SearchError as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(result.to_dict(), cls=DecimalEncoder, indent=2))
        return 0

    print(f"Index: {result.index_name} ({result.branch_count} branches)")
    print(f"Found {len(result.items)} results")
    print("-" * 60)
    for i, hit in enumerate(result.items, 1):
        f = hit.facets
        print(f"{i}. {hit.listing_id}  ${hit.price:,.0f}")
        print(f"   {f.get('deal_type')} | {f.get('property_type')} | {f.get('bed_bucket')} | {f.get('bath_bucket')}")
    for w in result.warnings:
        print(f"⚠️  {w['message']}")
    if result.cursor:
        print()
        print(f"Next page: --cursor {result.cursor}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
