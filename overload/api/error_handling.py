"""
Shared HTTP error mapping for route handlers.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


def http_exception(action: str, exc: Exception) -> HTTPException:
    """Map an unexpected handler error to a logged 500 response."""
    if isinstance(exc, HTTPException):
        return exc
    logger.error("Failed to %s: %s: %s", action, type(exc).__name__, exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {exc}",
    )
