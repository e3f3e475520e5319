"""
common.py - Shared configuration for the Hearth facet search planner

This module provides the pieces every other module pulls in:
- Environment configuration (table names, fan-out limits, retry budget)
- Logging level setup
- AWS client setup (DynamoDB via boto3)

Architecture:
- Listings live in a single DynamoDB table
- Each facet combination is served by a Global Secondary Index whose partition
  key is a composite attribute written by the ingest path and whose sort key is price
- Queries fan out over those indexes and are merged by listing_search.py
"""

import logging
import os
from dataclasses import dataclass

import boto3
from botocore.config import Config

# ===============================================
# ENVIRONMENT CONFIGURATION
# ===============================================
# Load configuration from environment variables with sensible defaults

AWS_REGION = os.getenv("AWS_REGION", "us-east-1")

LISTINGS_TABLE = os.getenv("LISTINGS_TABLE", "hearth-listings")  # Base table + GSIs

# Fan-out planning
MAX_FANOUT_BRANCHES = int(os.getenv("MAX_FANOUT_BRANCHES", "64"))  # PlanTooLarge above this
FALLBACK_ON_LARGE_PLAN = os.getenv("FALLBACK_ON_LARGE_PLAN", "false").lower() == "true"

# Fan-out execution
FANOUT_CONCURRENCY = int(os.getenv("FANOUT_CONCURRENCY", "8"))  # Max in-flight branch queries
BRANCH_TIMEOUT_SECONDS = float(os.getenv("BRANCH_TIMEOUT_SECONDS", "10"))
BRANCH_MAX_RETRIES = int(os.getenv("BRANCH_MAX_RETRIES", "3"))
BRANCH_BASE_BACKOFF = float(os.getenv("BRANCH_BASE_BACKOFF", "0.2"))  # 0.2s, 0.4s, 0.8s ...
BRANCH_MAX_BACKOFF = float(os.getenv("BRANCH_MAX_BACKOFF", "4.0"))
FATAL_FAILURE_FRACTION = float(os.getenv("FATAL_FAILURE_FRACTION", "0.5"))  # majority failing is fatal

# Pagination
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", "100"))

# Search query logging (see search_logger.py)
ENABLE_SEARCH_LOGS = os.getenv("ENABLE_SEARCH_LOGS", "false").lower() == "true"
SEARCH_LOGS_TABLE = os.getenv("SEARCH_LOGS_TABLE", "hearth-facet-search-logs")

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.getLogger().setLevel(LOG_LEVEL)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchSettings:
    """
    Snapshot of the tunables used by one ListingSearchService.

    The module-level constants above are read once at import; services take a
    SearchSettings so tests and scripts can override individual values
    without touching the environment.
    """
    max_branches: int = MAX_FANOUT_BRANCHES
    fallback_on_large_plan: bool = FALLBACK_ON_LARGE_PLAN
    concurrency: int = FANOUT_CONCURRENCY
    branch_timeout: float = BRANCH_TIMEOUT_SECONDS
    max_retries: int = BRANCH_MAX_RETRIES
    base_backoff: float = BRANCH_BASE_BACKOFF
    max_backoff: float = BRANCH_MAX_BACKOFF
    fatal_failure_fraction: float = FATAL_FAILURE_FRACTION
    default_page_size: int = DEFAULT_PAGE_SIZE
    max_page_size: int = MAX_PAGE_SIZE

    @classmethod
    def from_env(cls) -> "SearchSettings":
        return cls()


# ===============================================
# AWS CLIENT INITIALIZATION
# ===============================================

# Retries are owned by fanout_executor.py, so botocore only gets one extra attempt.
# Read timeout stays below BRANCH_TIMEOUT_SECONDS so a hung call surfaces as a
# retryable ReadTimeoutError before the branch deadline.
DYNAMODB_CONFIG = Config(
    connect_timeout=2,
    read_timeout=max(1, int(BRANCH_TIMEOUT_SECONDS) - 1),
    retries={"max_attempts": 1, "mode": "standard"},
    max_pool_connections=max(10, FANOUT_CONCURRENCY),
)


def get_dynamodb_client(region: str = None):
    """
    Create a low-level DynamoDB client for listing queries.

    Args:
        region: AWS region override (defaults to AWS_REGION)

    Returns:
        boto3 DynamoDB client sized for FANOUT_CONCURRENCY parallel queries
    """
    session = boto3.Session(region_name=region or AWS_REGION)
    return session.client("dynamodb", config=DYNAMODB_CONFIG)
