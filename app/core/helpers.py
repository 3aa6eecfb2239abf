"""
Helper functions for common infrastructure operations.

This module provides domain-agnostic utility functions for:
- HTTP request helpers (client IP extraction)
- Log-safe masking of identifiers (phone and account numbers)

Usage:
    from core.helpers import get_client_ip, mask_tail

    ip = get_client_ip(request)
    masked = mask_tail("254712345678")  # "***5678"
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from django.http import HttpRequest


def get_client_ip(request: HttpRequest) -> str:
    """
    Extract client IP from request, handling proxies.

    The first address of X-Forwarded-For is the original client; M-Pesa
    callbacks reach us through the load balancer.
    """
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR", "")


def mask_tail(value: str | None, visible: int = 4) -> str:
    """
    Hide all but the last ``visible`` characters.

    Empty values stay empty so log fields don't show a bare mask.
    """
    if not value:
        return ""
    return f"***{value[-visible:]}"
