"""
Helper functions for common infrastructure operations.

Domain-agnostic utilities:
- Client IP extraction behind proxies
- Timing-safe comparison of secrets and signatures

Usage:
    from core.helpers import constant_time_equals, get_client_ip

    ip = get_client_ip(request)
    if not constant_time_equals(expected_signature, received_signature):
        ...
"""

from __future__ import annotations

import hmac
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from django.http import HttpRequest


def get_client_ip(request: HttpRequest) -> str:
    """
    Extract client IP from request, handling proxies.

    Checks X-Forwarded-For header for proxy chains.

    Args:
        request: Django HTTP request

    Returns:
        Client IP address string (empty if unknown)
    """
    x_forwarded_for = request.META.get("HTTP_X_FORWARDED_FOR")
    if x_forwarded_for:
        # First entry is the original client
        return x_forwarded_for.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR", "")


def constant_time_equals(left: str | None, right: str | None) -> bool:
    """
    Compare two strings without leaking timing information.

    Args:
        left: First value (None never matches)
        right: Second value (None never matches)

    Returns:
        True if both values are present and equal
    """
    if not left or not right:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))
