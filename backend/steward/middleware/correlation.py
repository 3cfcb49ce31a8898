"""Correlation ID middleware for request tracing.

Every request gets an ``X-Request-ID``; the sweep job binds its run id
the same way so its log lines can be grouped.
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI


def setup_correlation_middleware(app: FastAPI) -> None:
    """Add correlation ID middleware to the FastAPI app.

    Echoes an incoming ``X-Request-ID`` or generates a new UUID.
    """
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name="X-Request-ID",
        generator=lambda: str(uuid.uuid4()),
        validator=None,
        transformer=lambda a: a,
    )


def get_correlation_id() -> str | None:
    """Return the current request's correlation ID, or None outside a request."""
    try:
        return correlation_id.get()
    except LookupError:
        return None


def bind_correlation_id(value: str) -> None:
    """Set the correlation ID for non-HTTP entry points such as the sweep job."""
    correlation_id.set(value)


__all__ = ["bind_correlation_id", "get_correlation_id", "setup_correlation_middleware"]
