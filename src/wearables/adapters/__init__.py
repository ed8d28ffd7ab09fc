"""Wearable device adapters for Prime.

Available adapters:
    WhoopClient — Whoop API v2 (OAuth2 grants, paginated fetches with retry)
"""

from src.wearables.adapters.whoop import InvalidStateError, WhoopClient

__all__ = [
    "InvalidStateError",
    "WhoopClient",
]
