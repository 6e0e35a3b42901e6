"""
Durable client-side storage.
"""

from .store import LocalStore, LocalTransaction

__all__ = ["LocalStore", "LocalTransaction"]
