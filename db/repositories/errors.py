"""
Repository-layer exceptions for ingestion persistence flows.
"""

from __future__ import annotations


class PersistenceError(RuntimeError):
    """Raised when a batch of records or a progress row cannot be stored."""
