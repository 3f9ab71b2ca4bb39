"""
Identity helpers for the Policy service.
"""

from .resolver import IdentityResolver, identity_hash, sanitize_context

__all__ = [
    "IdentityResolver",
    "identity_hash",
    "sanitize_context",
]
