"""
search_logger.py - Search query logging for fan-out analysis

Logs every facet search to CloudWatch (structured logger record) and, when
ENABLE_SEARCH_LOGS is set, to DynamoDB with complete context including:
- Request details (filter facets, price range, page size, resumed or not)
- Plan details (index, branch count, residual facets, degraded mode)
- Performance metrics (timing breakdown by stage)
- Merge statistics (fetched, duplicates, residual-filtered)
- Branch failures and warnings
"""

import hashlib
import json
import logging
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytz

from common import ENABLE_SEARCH_LOGS, SEARCH_LOGS_TABLE, get_dynamodb_client

logger = logging.getLogger(__name__)

_dynamodb = None  # created on first write


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal types from DynamoDB"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return int(obj) if obj == obj.to_integral_value() else float(obj)
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        return super(DecimalEncoder, self).default(obj)


def generate_query_id() -> str:
    """Generate unique query ID"""
    return str(uuid.uuid4())


def get_edt_timestamp(unix_timestamp: Optional[int] = None) -> str:
    """Format a Unix timestamp in New York time, e.g. "2025-10-14 22:30:45 EDT"."""
    if unix_timestamp is None:
        unix_timestamp = int(time.time())
    edt = pytz.timezone("America/New_York")
    return datetime.fromtimestamp(unix_timestamp, edt).strftime("%Y-%m-%d %H:%M:%S %Z")


def describe_filter(request) -> Dict[str, Any]:
    """Normalized, JSON-friendly view of a FilterRequest (no cursor)."""
    def values(v):
        if v is None:
            return []
        if isinstance(v, (str, int, float)):
            return [str(v)]
        return sorted(str(x) for x in v)

    return {
        "city": request.city,
        "deal_types": values(request.deal_types),
        "property_types": values(request.property_types),
        "bed_buckets": values(request.bed_buckets),
        "bath_buckets": values(request.bath_buckets),
        "price_min": None if request.price_min is None else str(request.price_min),
        "price_max": None if request.price_max is None else str(request.price_max),
    }


def hash_filter(filter_desc: Dict[str, Any]) -> str:
    """Generate deterministic hash for grouping identical filters"""
    return hashlib.md5(json.dumps(filter_desc, sort_keys=True).encode()).hexdigest()


def build_log_entry(query_id: str, request, plan, result, merge_stats: Dict[str, int],
                    failures: List[Any], timing_data: Dict[str, Any], total_time_ms: float) -> Dict[str, Any]:
    now = int(time.time())
    filter_desc = describe_filter(request)
    return {
        # Request context
        "query_id": query_id,
        "timestamp": int(time.time() * 1000),
        "logged_at_edt": get_edt_timestamp(now),
        "filter_hash": hash_filter(filter_desc),
        "filter": filter_desc,
        "page_size": request.page_size,
        "resumed": bool(request.cursor),

        # Plan
        "index": plan.index.name,
        "branch_count": len(plan.branches),
        "residual_facets": sorted(plan.residual),
        "degraded": plan.degraded,

        # Performance metrics
        "timing": timing_data,
        "total_time_ms": total_time_ms,

        # Results
        "result_count": len(result.items),
        "has_more": bool(result.cursor),
        "merge_stats": dict(merge_stats),
        "top_listing_ids": [h.listing_id for h in result.items[:10]],

        # Errors and warnings
        "failed_branches": [
            {"partition_key": f.partition_key, "reason": f.reason, "attempts": f.attempts}
            for f in failures
        ],
        "warnings": [w.get("message", "") for w in result.warnings],

        # TTL for auto-deletion (90 days)
        "expiration_time": now + (90 * 24 * 3600),
    }


def log_search_query(query_id: str, request, plan, result, merge_stats: Dict[str, int],
                     failures: List[Any], timing_data: Dict[str, Any], total_time_ms: float,
                     persist: Optional[bool] = None) -> Dict[str, Any]:
    """
    Log a completed facet search to CloudWatch and (optionally) DynamoDB.

    Args:
        query_id: Unique identifier for this search
        request: FilterRequest as received
        plan: FanOutPlan that was executed
        result: SearchResult returned to the caller
        merge_stats: MergeSortAggregator.stats
        failures: BranchFailure list (tolerated failures only)
        timing_data: Stage timing breakdown
        total_time_ms: Total execution time
        persist: Override ENABLE_SEARCH_LOGS

    Returns:
        The log entry that was emitted
    """
    log_entry = build_log_entry(query_id, request, plan, result, merge_stats,
                                failures, timing_data, total_time_ms)

    # Log to CloudWatch (structured JSON)
    logger.info(
        "SEARCH_COMPLETE",
        extra={
            "query_id": query_id,
            "index": log_entry["index"],
            "branch_count": log_entry["branch_count"],
            "total_time_ms": total_time_ms,
            "result_count": log_entry["result_count"],
            "failed_branches": len(failures),
            "warnings": len(result.warnings),
        }
    )

    if persist is None:
        persist = ENABLE_SEARCH_LOGS
    if persist:
        # Log to DynamoDB (for querying and analysis)
        try:
            _write_to_dynamodb(log_entry)
        except Exception as e:
            logger.error(f"Failed to write search log to DynamoDB: {e}")
            # Don't fail the search if logging fails

    return log_entry


def _write_to_dynamodb(log_entry: dict, client=None) -> None:
    """Write log entry to DynamoDB"""
    global _dynamodb
    if client is None:
        if _dynamodb is None:
            _dynamodb = get_dynamodb_client()
        client = _dynamodb

    # Convert to DynamoDB format
    item = {}
    for key, value in log_entry.items():
        item[key] = _python_to_dynamodb(value)

    client.put_item(
        TableName=SEARCH_LOGS_TABLE,
        Item=item
    )


def _python_to_dynamodb(value):
    """Convert Python value to DynamoDB format"""
    if value is None:
        return {"NULL": True}
    elif isinstance(value, bool):
        return {"BOOL": value}
    elif isinstance(value, (int, float, Decimal)):
        return {"N": str(value)}
    elif isinstance(value, str):
        return {"S": value}
    elif isinstance(value, (list, tuple)):
        return {"L": [_python_to_dynamodb(item) for item in value]}
    elif isinstance(value, dict):
        return {"M": {k: _python_to_dynamodb(v) for k, v in value.items()}}
    else:
        return {"S": str(value)}
