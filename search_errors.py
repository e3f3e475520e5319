"""
search_errors.py - Error taxonomy for the Hearth facet search planner

Fail-fast errors (raised before any storage I/O, or instead of a partial result):
- InvalidAttribute: malformed raw facet value at key-build time
- InvalidRequest: malformed FilterRequest
- NoIndexAvailable: mandatory facet (city) missing
- PlannerError: selected index partitions on a facet the request left open
- PlanTooLarge: fan-out cross-product exceeds the configured branch cap
- UnknownIndex: catalog misconfiguration / unregistered index name
- StaleCursor: cursor does not belong to the plan derived from the request

Fan-out errors:
- BranchFailure: a single branch exhausted its retries (tolerated below threshold)
- FanOutFailure: too many branches failed, escalated to a request failure
- SearchCancelled: caller cancelled the request
- TransientStorageError: retryable error raised by storage bindings
"""

from typing import List, Optional


class SearchError(Exception):
    """Base class for all planner errors."""


class InvalidAttribute(SearchError, ValueError):
    pass


class InvalidRequest(SearchError, ValueError):
    pass


class NoIndexAvailable(SearchError):
    pass


class PlannerError(SearchError):
    pass


class PlanTooLarge(SearchError):
    """Raised when the fan-out product would exceed the branch cap."""

    def __init__(self, index_name: str, branch_count: int, max_branches: int):
        self.index_name = index_name
        self.branch_count = branch_count
        self.max_branches = max_branches
        super().__init__(
            f"Fan-out on {index_name} needs {branch_count} branches "
            f"(max {max_branches}); narrow the filter"
        )


class UnknownIndex(SearchError):
    pass


class StaleCursor(SearchError):
    pass


class BranchFailure(SearchError):
    """A single fan-out branch failed after exhausting its retry budget."""

    def __init__(self, branch_id: int, partition_key: str, reason: str, attempts: int = 1):
        self.branch_id = branch_id
        self.partition_key = partition_key
        self.reason = reason
        self.attempts = attempts
        super().__init__(
            f"Branch {branch_id} ({partition_key}) failed after {attempts} attempt(s): {reason}"
        )


class FanOutFailure(SearchError):
    """Too many branches failed for a partial result to be meaningful."""

    def __init__(self, failures: List[BranchFailure], total_branches: int):
        self.failures = failures
        self.total_branches = total_branches
        keys = ", ".join(f.partition_key for f in failures[:5])
        super().__init__(
            f"{len(failures)}/{total_branches} fan-out branches failed ({keys})"
        )


class SearchCancelled(SearchError):
    pass


class TransientStorageError(SearchError):
    """Retryable storage failure (throttling, timeouts, 5xx)."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)
