"""
dynamodb_store.py - Storage binding for branch queries against listing GSIs

Implements the single storage call the planner needs:

    query(index_name, partition_key, price_range, page_size, resume_token)
        -> BranchPage(items ordered by price ascending, next_token | None)

DynamoDB mapping:
- IndexName = GSI name from the catalog
- KeyConditionExpression = "#pk = :pk AND #price BETWEEN :lo AND :hi"
  (or >= / <= when only one bound is given, no sort condition when unbounded)
- ScanIndexForward = True (ascending price)
- LastEvaluatedKey <-> opaque url-safe base64 token
- Numbers come back as Decimal (TypeDeserializer), so prices never lose precision
"""

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError, ConnectionError as BotoConnectionError, HTTPClientError

from common import LISTINGS_TABLE, get_dynamodb_client
from index_catalog import PRICE_ATTRIBUTE, IndexCatalog, default_catalog
from listing_keys import (
    FACET_BATH_BUCKET, FACET_BED_BUCKET, FACET_CITY, FACET_DEAL_TYPE, FACET_PROPERTY_TYPE,
    bathroom_bucket, bedroom_bucket,
)
from search_errors import InvalidAttribute, StaleCursor, TransientStorageError

logger = logging.getLogger(__name__)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO"))

# DynamoDB error codes worth retrying (throttling + server side)
TRANSIENT_ERROR_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
}


@dataclass
class ListingHit:
    """One listing returned by a branch query."""
    listing_id: str
    price: Decimal
    facets: Dict[str, Any] = field(default_factory=dict)
    item: Dict[str, Any] = field(default_factory=dict)  # full projected item (images, owner ref, ...)


@dataclass
class BranchPage:
    items: List[ListingHit]
    next_token: Optional[str] = None  # None = partition exhausted


class ListingStore:
    """Interface for storage bindings used by FanOutExecutor."""

    def query(self, index_name: str, partition_key: str, price_range, page_size: int,
              resume_token: Optional[str] = None) -> BranchPage:
        raise NotImplementedError


def is_transient_error(exc: Exception) -> bool:
    """True when a storage error is worth retrying with backoff."""
    if isinstance(exc, TransientStorageError):
        return True
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        return error.get("Code") in TRANSIENT_ERROR_CODES or status >= 500
    # endpoint/connect failures, read timeouts, dropped connections
    return isinstance(exc, (BotoConnectionError, HTTPClientError))


# ===============================================
# RESUME TOKENS
# ===============================================

def encode_token(last_evaluated_key: Optional[Dict[str, Any]]) -> Optional[str]:
    """Serialize a DynamoDB LastEvaluatedKey (low-level format) to an opaque token."""
    if not last_evaluated_key:
        return None
    raw = json.dumps(last_evaluated_key, sort_keys=True, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Inverse of encode_token; a token that does not decode is a stale/forged cursor."""
    if token is None:
        return None
    try:
        key = json.loads(base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise StaleCursor(f"Malformed resume token: {e}") from e
    if not isinstance(key, dict):
        raise StaleCursor("Malformed resume token: expected an object")
    return key


# ===============================================
# ITEM CONVERSION
# ===============================================

_deserializer = TypeDeserializer()


def _dynamodb_to_python(item: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert a low-level DynamoDB item to plain Python (numbers -> Decimal)."""
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


def item_to_hit(item: Mapping[str, Any]) -> ListingHit:
    """
    Build a ListingHit from a deserialized listing item.

    Bucket attributes are projected by the ingest path; if an older item only
    carries raw bedrooms/bathrooms, buckets are recomputed with listing_keys so
    residual filtering still sees the same labels.
    """
    facets = {
        FACET_CITY: item.get(FACET_CITY),
        FACET_DEAL_TYPE: item.get(FACET_DEAL_TYPE),
        FACET_PROPERTY_TYPE: item.get(FACET_PROPERTY_TYPE),
        FACET_BED_BUCKET: item.get(FACET_BED_BUCKET),
        FACET_BATH_BUCKET: item.get(FACET_BATH_BUCKET),
    }
    for facet, attribute, bucket in ((FACET_BED_BUCKET, "bedrooms", bedroom_bucket),
                                     (FACET_BATH_BUCKET, "bathrooms", bathroom_bucket)):
        if facets[facet] is not None or item.get(attribute) is None:
            continue
        try:
            facets[facet] = bucket(item[attribute])
        except InvalidAttribute as e:
            logger.warning("Listing %s has malformed %s: %s", item.get("listing_id"), attribute, e)

    return ListingHit(
        listing_id=str(item["listing_id"]),
        price=Decimal(str(item[PRICE_ATTRIBUTE])),
        facets=facets,
        item=dict(item),
    )


# ===============================================
# DYNAMODB STORE
# ===============================================

class DynamoDBListingStore(ListingStore):
    """Branch queries against the listing table's GSIs via a boto3 client."""

    def __init__(self, client=None, table_name: str = None, catalog: IndexCatalog = None):
        self.client = client or get_dynamodb_client()
        self.table_name = table_name or LISTINGS_TABLE
        self.catalog = catalog or default_catalog()

    def build_query(self, index_name: str, partition_key: str, price_range, page_size: int,
                    resume_token: Optional[str] = None) -> Dict[str, Any]:
        """Build the boto3 query kwargs for one branch (separate for --explain and tests)."""
        index = self.catalog.describe(index_name)
        low, high = price_range if price_range is not None else (None, None)

        names = {"#pk": index.partition_attribute}
        values = {":pk": {"S": partition_key}}
        condition = "#pk = :pk"

        if low is not None or high is not None:
            names["#price"] = index.sort_attribute
            if low is not None and high is not None:
                condition += " AND #price BETWEEN :lo AND :hi"
                values[":lo"] = {"N": str(low)}
                values[":hi"] = {"N": str(high)}
            elif low is not None:
                condition += " AND #price >= :lo"
                values[":lo"] = {"N": str(low)}
            else:
                condition += " AND #price <= :hi"
                values[":hi"] = {"N": str(high)}

        kwargs = {
            "TableName": self.table_name,
            "IndexName": index.name,
            "KeyConditionExpression": condition,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
            "ScanIndexForward": True,
            "Limit": page_size,
        }
        start_key = decode_token(resume_token)
        if start_key:
            kwargs["ExclusiveStartKey"] = start_key
        return kwargs

    def query(self, index_name: str, partition_key: str, price_range, page_size: int,
              resume_token: Optional[str] = None) -> BranchPage:
        kwargs = self.build_query(index_name, partition_key, price_range, page_size, resume_token)
        response = self.client.query(**kwargs)

        items = []
        for raw in response.get("Items", []):
            item = _dynamodb_to_python(raw)
            if "listing_id" not in item or PRICE_ATTRIBUTE not in item:
                logger.warning("Skipping item without listing_id/price in %s (%s)", index_name, partition_key)
                continue
            items.append(item_to_hit(item))

        next_token = encode_token(response.get("LastEvaluatedKey"))
        logger.debug("DynamoDB %s %s -> %d items, more=%s", index_name, partition_key, len(items), bool(next_token))
        return BranchPage(items=items, next_token=next_token)
