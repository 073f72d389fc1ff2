from codemend.store.engine import StorageEngine, default_db_url
from codemend.store.issue_store import IssueStore, SyncResult
from codemend.store.pattern_store import PatternStore
from codemend.store.snapshot_store import SnapshotStore

__all__ = [
    "StorageEngine",
    "default_db_url",
    "IssueStore",
    "SyncResult",
    "PatternStore",
    "SnapshotStore",
]
