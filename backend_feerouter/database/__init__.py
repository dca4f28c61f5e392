"""
Persistence layer: snapshot models and pluggable key-value stores.

MemoryStore for tests and ephemeral runs, SQLiteStore for the service; any
other backing store only needs read()/write() from KeyValueStore.
"""

from backend_feerouter.database.database import (
    KeyValueStore,
    MemoryStore,
    SnapshotRepository,
    SQLiteStore,
    get_store,
)
from backend_feerouter.database.models import (
    FeeStatus,
    FeeTransaction,
    RoutingStatus,
    ShellWallet,
    Snapshot,
    VendorFeeSummary,
)

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "SnapshotRepository",
    "SQLiteStore",
    "get_store",
    "FeeStatus",
    "FeeTransaction",
    "RoutingStatus",
    "ShellWallet",
    "Snapshot",
    "VendorFeeSummary",
]
