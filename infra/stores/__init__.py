"""Storage entrypoint.

Stores share one psycopg pool per service; see ``ServiceContext``.
"""

from .base import BaseStore, create_pool
from .issuance_store import IssuanceStore

__all__ = [
    "BaseStore",
    "IssuanceStore",
    "create_pool",
]
