"""HTTP status constants shared by provider error mapping and retry."""

from __future__ import annotations

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

# Gateway-side statuses that mean the endpoint itself is not reachable.
UNAVAILABLE_STATUS_CODES: frozenset[int] = frozenset({502, 503, 504})
