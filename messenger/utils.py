"""
Small helpers shared by the stores.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    """Current server time as ISO-8601 UTC with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def normalize_key(idempotency_key: Optional[str]) -> Optional[str]:
    """
    Normalize a caller-supplied idempotency key.

    Blank or whitespace-only keys are treated as absent so they never take
    part in deduplication. Any other key is kept exactly as sent.
    """
    if idempotency_key is None:
        return None
    return idempotency_key if idempotency_key.strip() else None
