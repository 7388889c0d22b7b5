"""
Stripe idempotency key generation.

Keys are a content hash of the logical request, so a retried or
double-submitted request reuses the key and Stripe returns the original
result instead of creating a second object.
"""

import hashlib
import json
from typing import Any


def idempotency_key(operation: str, **fields: Any) -> str:
    """Build a deterministic idempotency key.

    Args:
        operation: Operation type (e.g. "checkout", "customer")
        **fields: Values identifying the logical request; None is kept as null

    Returns:
        ``<operation>_<40 hex chars>``
    """
    canonical = json.dumps(fields, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(f"{operation}:{canonical}".encode("utf-8")).hexdigest()
    return f"{operation}_{digest[:40]}"
