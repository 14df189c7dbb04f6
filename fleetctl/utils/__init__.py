"""Utility modules for the fleet control plane."""

import time
import uuid
from datetime import UTC, datetime

from flask import g, has_request_context, request


def get_current_correlation_id() -> str:
    """Get or generate a correlation ID for the current request.

    Returns:
        The caller-supplied X-Request-ID when present, otherwise a UUID that
        is reused for the rest of the request
    """
    if not has_request_context():
        return str(uuid.uuid4())

    correlation_id = getattr(g, "correlation_id", None)
    if correlation_id is None:
        correlation_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        g.correlation_id = correlation_id
    return correlation_id


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
